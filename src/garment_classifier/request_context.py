from __future__ import annotations

import contextvars

# Correlation id of the HTTP request being served; blank outside a request.
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")


def current_request_id() -> str:
    return request_id_var.get()
