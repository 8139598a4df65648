#!/usr/bin/env python3
"""
Example script to list all guests in the cluster with their snapshot counts.

Usage: python list_vms.py
"""

import sys

from pvesnap.client import connect
from pvesnap.cluster import discover
from pvesnap.config import resolve_config
from pvesnap.errors import ProxmoxError
from pvesnap.snapshot import SnapshotEngine


def main():
    try:
        config = resolve_config()
        client, _ = connect(config.host_list(), config.token, port=config.port, verify_ssl=config.verify_ssl)
        topology = discover(client)
        engine = SnapshotEngine(client)

        for guest in topology.guests:
            snapshots = engine.list(guest)
            state = 'running' if guest.running else 'stopped'
            print(f"{guest.id}: {guest.name or '-'} ({guest.type.value}) on {guest.node.name} - {state}, "
                  f"{len(snapshots)} snapshots")
    except ProxmoxError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
