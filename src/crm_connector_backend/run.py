"""
Module runner to start the FastAPI server.

Usage:
    python -m crm_connector_backend.run
"""
import os

import uvicorn
from dotenv import load_dotenv


def env_bool(name: str, default: bool = False) -> bool:
    """Read a boolean environment variable with sensible defaults."""
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


def get_port() -> int:
    """Get server port, default 3001."""
    try:
        return int(os.getenv("PORT", "3001"))
    except ValueError:
        return 3001


# PUBLIC_INTERFACE
def main():
    """Entry point to start the FastAPI server with environment-based configuration."""
    load_dotenv()
    uvicorn.run(
        "crm_connector_backend.api.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=get_port(),
        reload=env_bool("RELOAD", False),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
