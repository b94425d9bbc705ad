"""
Deal CRM Configuration
Loads settings from environment variables with sensible defaults.
"""

import logging
import os
from pathlib import Path
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

# Load .env file
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)


class Config:
    """Application configuration."""

    # Database: must be set in .env; never hardcode credentials here
    DATABASE_URL = os.getenv('DATABASE_URL')
    if not DATABASE_URL:
        _logger.critical("DATABASE_URL is not set, cannot start. Copy .env.example to .env and configure it.")
        raise ValueError("DATABASE_URL environment variable is not set. Copy .env.example to .env and configure it.")

    # Seconds to wait for a PostgreSQL connection
    DB_CONNECT_TIMEOUT = int(os.getenv('DB_CONNECT_TIMEOUT', '10'))

    # Timezone used for "today" (default promised dates)
    TIMEZONE = os.getenv('TIMEZONE', 'America/New_York')

    # Which draft adapter the deal service uses when none is passed in
    # normalized: DealDraft objects from the current deal form
    # legacy:     flat form dicts from the older deal form
    DEAL_ADAPTER = os.getenv('DEAL_ADAPTER', 'normalized')

    # Label shown when no vendor can be derived for a deal
    VENDOR_NONE_LABEL = os.getenv('VENDOR_NONE_LABEL', 'Unassigned')

    # Default page size for deal listings
    DEAL_LIST_LIMIT = int(os.getenv('DEAL_LIST_LIMIT', '50'))


# Singleton instance
config = Config()
