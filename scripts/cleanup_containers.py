#!/usr/bin/env python3
"""
Container Cleanup Utility
=========================

Removes runner containers left behind by a crashed or killed API process.

The API already does this on startup; this script is for cleaning up while
the API is down.

Usage:
    python scripts/cleanup_containers.py            # Remove all runner containers
    python scripts/cleanup_containers.py --list     # Only list them
"""

import argparse
import asyncio
import sys

import docker
from docker.errors import DockerException

from genstack.containers import ContainerService
from genstack.utils.config import Config


def list_containers(client: docker.DockerClient, prefix: str) -> list:
    containers = client.containers.list(all=True, filters={"name": prefix})
    return [c for c in containers if c.name.lstrip("/").startswith(prefix)]


async def cleanup(list_only: bool) -> int:
    config = Config.load_default()
    prefix = config.containers.name_prefix

    print("\n" + "=" * 80)
    print("GenStack Container Cleanup")
    print("=" * 80 + "\n")

    try:
        client = docker.from_env()
    except DockerException as e:
        print(f"Error: Failed to connect to Docker: {e}")
        print("Make sure Docker is running")
        return 1

    containers = list_containers(client, prefix)
    if not containers:
        print(f"✓ No '{prefix}*' containers found.\n")
        return 0

    print(f"Found {len(containers)} container(s):\n")
    for container in containers:
        status_icon = "🟢" if container.status == "running" else "⚪"
        print(f"  {status_icon} {container.name}")
        print(f"     Status: {container.status}")
        print()

    if list_only:
        return 0

    service = ContainerService(config.containers, client=client)
    removed = await service.cleanup_orphaned_containers()
    print(f"✓ Removed {removed} container(s)")
    failed = len(containers) - removed
    if failed > 0:
        print(f"✗ Failed to remove {failed} container(s)")
    print()
    return 0 if failed == 0 else 1


def main():
    parser = argparse.ArgumentParser(description="Clean up GenStack runner containers")
    parser.add_argument("--list", action="store_true", help="List containers without removing them")
    args = parser.parse_args()
    sys.exit(asyncio.run(cleanup(args.list)))


if __name__ == "__main__":
    main()
