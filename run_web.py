"""
Trade Signal Backtester – Launch the API server.

Usage:
    python run_web.py

Local: http://localhost:8000/docs
"""

import logging
import sys

import uvicorn
from dotenv import load_dotenv

load_dotenv()

from src.config import get_settings  # noqa: E402

if __name__ == "__main__":
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    print("\n" + "=" * 50)
    print("  Trade Signal Backtester")
    print("  Local: http://localhost:8000/docs")
    print("=" * 50 + "\n")

    # Disable reload on Windows to avoid multiprocessing permission errors
    is_windows = sys.platform.startswith("win")

    uvicorn.run(
        "src.api.app:app",
        host="0.0.0.0",
        port=8000,
        reload=not is_windows,
        reload_dirs=[".", "src", "config"] if not is_windows else None,
        reload_excludes=[".venv/*", "__pycache__/*", "*.pyc"] if not is_windows else None,
        log_level=settings.log_level.lower(),
    )
