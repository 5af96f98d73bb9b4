#!/usr/bin/env python3
"""
Database Initialization Script
==============================

Creates the GenStack database if it doesn't exist and applies the schema.

Usage:
    python scripts/init_database.py [--url DATABASE_URL]
"""

import argparse
import asyncio
import logging
import sys
import urllib.parse

import asyncpg

from genstack.database import PostgresSessionStore
from genstack.utils.config import Config

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def create_database_if_not_exists(connection_url: str) -> None:
    """Create the target database by connecting to the ``postgres`` maintenance database."""
    db_name = urllib.parse.urlparse(connection_url).path.lstrip('/')
    admin_url = connection_url.replace(f"/{db_name}", "/postgres")

    conn = await asyncpg.connect(admin_url)
    try:
        exists = await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", db_name)
        if exists:
            logger.info(f"Database '{db_name}' already exists")
            return
        await conn.execute(f'CREATE DATABASE "{db_name}"')
        logger.info(f"Created database '{db_name}'")
    finally:
        await conn.close()


async def init_database(connection_url: str) -> None:
    await create_database_if_not_exists(connection_url)

    store = PostgresSessionStore(connection_url, min_size=1, max_size=2)
    await store.connect()
    try:
        await store.init_schema()
        logger.info("Schema applied")
    finally:
        await store.disconnect()


def main():
    parser = argparse.ArgumentParser(description="Initialize the GenStack PostgreSQL database")
    parser.add_argument("--url", help="Database URL (defaults to DATABASE_URL or config)")
    args = parser.parse_args()

    url = args.url or Config.load_default().database.database_url
    try:
        asyncio.run(init_database(url))
    except (OSError, asyncpg.PostgresError) as e:
        logger.error(f"Database initialization failed: {e}")
        sys.exit(1)
    logger.info("Database initialization complete")


if __name__ == "__main__":
    main()
