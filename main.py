"""ASGI entry point: `uvicorn main:app --host 0.0.0.0 --port 8000`."""
from __future__ import annotations

import os

from cda.api import create_app

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("CDA_HOST", "0.0.0.0"), port=int(os.getenv("CDA_PORT", "8000")))
