#!/usr/bin/env python3
"""
Development server launcher. Install the project first (pip install -e .).
"""
from vocab_relay.app.config.settings import settings

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "vocab_relay.app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
