#!/usr/bin/env python3
"""
myDATA Connection Check

Probes the myDATA REST API with a business's credentials (or the shared
development pair) and prints a diagnostic.

Usage:
    python scripts/check_mydata_connection.py --user-id <owner_id>
    python scripts/check_mydata_connection.py --environment development
    python scripts/check_mydata_connection.py --aade-user demo --subscription-key xxxx

Exit code 0 when myDATA answered, 1 otherwise.
"""

import asyncio
import argparse
import json
import sys
import os
import logging

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

from config import get_settings
from services.business_settings_service import BusinessSettingsService
from services.mydata_client import CredentialsNotConfiguredError, MyDataClient, resolve_credentials

# Load environment
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def load_credentials(args, settings):
    if args.aade_user or args.subscription_key:
        override = {"user_id": args.aade_user, "subscription_key": args.subscription_key}
        return resolve_credentials(args.environment or settings.environment, override, settings)

    if args.user_id:
        client = AsyncIOMotorClient(settings.mongo_url)
        try:
            service = BusinessSettingsService(client[settings.db_name])
            return await service.get_credentials(args.user_id, args.environment)
        finally:
            client.close()

    return resolve_credentials(args.environment or settings.environment, None, settings)


async def main():
    parser = argparse.ArgumentParser(
        description="Check connectivity and credentials against myDATA"
    )
    parser.add_argument(
        "--user-id",
        type=str,
        help="Owner whose stored myDATA credentials are used"
    )
    parser.add_argument(
        "--environment", "-e",
        choices=["development", "production"],
        help="Target environment (defaults to the configured one)"
    )
    parser.add_argument(
        "--aade-user",
        type=str,
        help="myDATA user id (overrides stored credentials)"
    )
    parser.add_argument(
        "--subscription-key",
        type=str,
        help="myDATA subscription key (overrides stored credentials)"
    )
    args = parser.parse_args()

    settings = get_settings()
    try:
        credentials = await load_credentials(args, settings)
    except CredentialsNotConfiguredError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"Testing {credentials.environment.value} as {credentials.masked()} ({credentials.source})")

    async with MyDataClient(settings) as client:
        result = await client.test_connection(credentials)

    print(json.dumps(result.model_dump(), indent=2))
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    asyncio.run(main())
