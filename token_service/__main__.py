"""
Entry point for running the token service.

Usage:
    python -m token_service

This starts the FastAPI server on http://0.0.0.0:8000 (TOKEN_SERVICE_PORT).
"""
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from logging_setup import setup_logging

root = Path(__file__).parent.parent
for name in (".env_local", ".env.local"):
    p = root / name
    if p.exists():
        load_dotenv(p, override=False)

if __name__ == "__main__":
    setup_logging(level=os.getenv("LOG_LEVEL", "INFO"), use_json=True)

    uvicorn.run(
        "token_service.app:app",
        host="0.0.0.0",
        port=int(os.getenv("TOKEN_SERVICE_PORT", "8000")),
        log_level="info"
    )
