from __future__ import annotations

from .api.app import serve

if __name__ == "__main__":
    serve()
