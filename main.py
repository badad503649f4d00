"""
Entry point for bilinote.

Run this file directly to start the FastAPI server:
    python main.py
    python -m main

Or use uvicorn directly:
    uvicorn bilinote.main:app --reload --host 0.0.0.0 --port 8000
"""

import uvicorn

from bilinote.config import settings


def main() -> None:
    """
    Start the uvicorn server.

    Server configuration can be overridden via environment variables:
    - HOST: Server host (default: 0.0.0.0)
    - PORT: Server port (default: 8000)
    - LOG_LEVEL: uvicorn log level (default: info)
    - AI_PROVIDER / QWEN_API_KEY / KIMI_API_KEY: note generation
    - BILIBILI_COOKIE: session cookie for AI subtitles
    """
    print("=" * 60)
    print("Bilibili Study Notes")
    print("=" * 60)
    print(f"Starting server on http://{settings.host}:{settings.port}")
    print(f"  - AI provider: {settings.ai_provider}")
    print(f"  - Bilibili cookie: {'configured' if settings.bilibili_cookie else 'missing'}")
    print("=" * 60)

    uvicorn.run(
        "bilinote.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
