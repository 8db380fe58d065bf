"""
Careslot booking core - Main Application
Run with: uvicorn careslot.main:app
"""

import logging

from dotenv import load_dotenv

# Load environment variables FIRST before importing modules that need them
load_dotenv()

from careslot.utils.logging_config import configure_logging  # noqa: E402

configure_logging()

from careslot.app_factory import create_app  # noqa: E402

logger = logging.getLogger(__name__)

app = create_app()
