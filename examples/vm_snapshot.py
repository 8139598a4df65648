#!/usr/bin/env python3
"""
Example script to snapshot one or more guests, wherever they run in the cluster.

Usage: python vm_snapshot.py <vmid-or-name>[,<vmid-or-name>...] <snapname> [description]

Reads PROXMOX_HOST and PROXMOX_API_TOKEN (or ~/.config/pvesnap/config.yaml).
"""

import sys

from pvesnap.batch import BatchExecutor, Operation
from pvesnap.client import connect
from pvesnap.cluster import discover
from pvesnap.config import resolve_config
from pvesnap.errors import ProxmoxError
from pvesnap.snapshot import SnapshotEngine


def main():
    if len(sys.argv) < 3:
        print("Usage: python vm_snapshot.py <vmid-or-name>[,...] <snapname> [description]")
        sys.exit(1)

    targets = sys.argv[1].split(',')
    snapname = sys.argv[2]
    description = sys.argv[3] if len(sys.argv) > 3 else None

    try:
        config = resolve_config()
        client, _ = connect(config.host_list(), config.token, port=config.port, verify_ssl=config.verify_ssl)
        topology = discover(client)
    except ProxmoxError as e:
        print(f"Error: {e}")
        sys.exit(1)

    engine = SnapshotEngine(client, poll_interval=config.poll_interval, timeout=config.timeout)
    print(f"Creating snapshot '{snapname}' for {', '.join(targets)}...")
    report = BatchExecutor(engine, config.concurrency).run(topology, targets, Operation.create(snapname, description))

    for result in report:
        if result.success:
            print(f"  {result.target}: created on node {result.guest.node.name}")
        else:
            print(f"  {result.target}: {result.error_kind}: {result.message}")
    sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
