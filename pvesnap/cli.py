"""
pvesnap: Proxmox VE snapshot management across a cluster.

Usage: pvesnap [options] <command> ...

Guests are given as VMIDs or exact names; commands that take VMS accept a
comma-separated list (e.g. 100,101,web) and run on each target concurrently.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from pvesnap import __version__
from pvesnap.batch import BatchExecutor, BatchReport, Operation
from pvesnap.client import connect
from pvesnap.cluster import discover, resolve
from pvesnap.config import resolve_config
from pvesnap.errors import ProxmoxAuthError, ProxmoxError
from pvesnap.snapshot import SnapshotEngine


def parse_targets(value: str) -> List[str]:
    """Split '100,101,web' into ['100', '101', 'web']."""
    return [v.strip() for v in value.split(',') if v.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='pvesnap', description='Proxmox VE snapshot management tool')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-c', '--config', help='Path to YAML configuration file')
    parser.add_argument('--cluster', help='Cluster entry to use from the configuration file')
    parser.add_argument('-H', '--host', help='Proxmox host, optionally host:port (env PROXMOX_HOST)')
    parser.add_argument('-p', '--port', type=int, help='API port (env PROXMOX_PORT, default 8006)')
    parser.add_argument('-t', '--token', help='API token USER@REALM!TOKENID=SECRET (env PROXMOX_API_TOKEN)')
    verify = parser.add_mutually_exclusive_group()
    verify.add_argument('-k', '--verify-ssl', dest='verify_ssl', action='store_true', default=None,
                        help='Verify TLS certificates (env PROXMOX_VERIFY_SSL)')
    verify.add_argument('--no-verify-ssl', dest='verify_ssl', action='store_false',
                        help='Do not verify TLS certificates')
    parser.add_argument('--timeout', type=float, help='Task timeout in seconds (default 300)')
    parser.add_argument('--poll-interval', type=float, help='Seconds between task status polls (default 2)')
    parser.add_argument('-j', '--concurrency', type=int, help='Targets processed in parallel (default 3)')
    parser.add_argument('-R', '--raw', action='store_true', help='Print JSON instead of text')
    parser.add_argument('-v', '--verbose', action='count', default=0, help='More logging (-vv for debug)')

    sub = parser.add_subparsers(dest='command', metavar='<command>')
    sub.required = True

    p = sub.add_parser('create', help='Create a snapshot')
    p.add_argument('vms', help='VMID or name, comma-separated for several guests')
    p.add_argument('-s', '--snapname', help='Snapshot name (default snapshot-YYYYMMDD-HHMMSS)')
    p.add_argument('-d', '--description', help='Snapshot description')
    p.add_argument('-m', '--vmstate', action='store_true', help='Include memory state (running VMs only)')

    p = sub.add_parser('delete', help='Delete a snapshot')
    p.add_argument('vms', help='VMID or name, comma-separated for several guests')
    p.add_argument('snapname', help='Snapshot name')

    p = sub.add_parser('list', help='List snapshots')
    p.add_argument('vms', help='VMID or name, comma-separated for several guests')

    p = sub.add_parser('rollback', help='Roll back to a snapshot')
    p.add_argument('vms', help='VMID or name, comma-separated for several guests')
    p.add_argument('snapname', help='Snapshot name')

    p = sub.add_parser('info', help='Show guest information')
    p.add_argument('vm', help='VMID or name')

    p = sub.add_parser('check', help='Show guest status')
    p.add_argument('vm', help='VMID or name')

    sub.add_parser('test', help='Test the API connection')

    p = sub.add_parser('list-vms', help='List guests in the cluster')
    p.add_argument('-N', '--node', help='Only guests on this node')

    sub.add_parser('list-nodes', help='List cluster nodes')
    return parser


def _emit(data):
    print(json.dumps(data, indent=2, default=str))


def _format_uptime(seconds: int) -> str:
    days, rest = divmod(int(seconds), 86400)
    hours, rest = divmod(rest, 3600)
    return f"{days}d {hours}h {rest // 60}m"


def print_report(report: BatchReport, raw: bool = False):
    if raw:
        entries = []
        for result in report:
            entry = result.to_dict()
            if result.success and report.action == 'list':
                entry['snapshots'] = [s.model_dump(mode='json') for s in result.value]
            elif result.success and result.value is not None:
                entry['record'] = result.value.model_dump(mode='json')
            entries.append(entry)
        print(json.dumps({'action': report.action, 'succeeded': report.succeeded, 'results': entries}, indent=2))
        return

    for result in report:
        if not result.success:
            line = f"✗ {result.target}: {result.error_kind}: {result.message}"
            print(line)
            print(line, file=sys.stderr)
            continue
        guest = result.guest
        if report.action == 'list':
            print(f"Snapshots for {guest.label()} on node {guest.node.name}:")
            if not result.value:
                print("  (none)")
            for snap in result.value:
                created = snap.created_at.strftime('%Y-%m-%d %H:%M:%S') if snap.created_at else 'Unknown'
                state = ' [vmstate]' if snap.includes_memory_state else ''
                print(f"  - {snap.name} [{snap.description or 'No description'}] (Created: {created}){state}")
        else:
            record = result.value
            detail = f" '{record.snapshot}'" if record.snapshot else ''
            if report.action == 'create' and record.include_memory_state:
                detail += ' with memory state'
            print(f"✓ {result.target}: {report.action}{detail} on {guest.label()} "
                  f"(node {guest.node.name}, {result.duration:.1f}s)")
    if len(report) > 1:
        ok = len(report) - len(report.failures)
        print(f"{report.action}: {ok}/{len(report)} succeeded")


def cmd_test(args, version):
    if args.raw:
        _emit(version)
    else:
        print("✓ Connection successful!")
        print(f"  Proxmox VE version: {version.get('version', 'unknown')}")
    return 0


def cmd_list_nodes(args, topology):
    if args.raw:
        _emit([n.model_dump() for n in topology.nodes])
        return 0
    print("Cluster nodes:")
    for node in topology.nodes:
        address = f", {node.address}" if node.address else ''
        print(f"- {node.name} ({'online' if node.online else 'offline'}{address})")
    return 0


def cmd_list_vms(args, topology):
    guests = topology.guests_on(args.node) if args.node else list(topology.guests)
    if args.raw:
        _emit([g.model_dump(mode='json') for g in guests])
        return 0
    if not guests:
        print("No VMs found")
        return 0
    print(f"{'VMID':<8} {'Name':<20} {'Type':<6} {'Node':<12} {'Status':<10}")
    print("-" * 60)
    for g in guests:
        print(f"{g.id:<8} {(g.name or '-'):<20} {g.type.value:<6} {g.node.name:<12} "
              f"{'running' if g.running else 'stopped':<10}")
    return 0


def cmd_guest_status(args, engine, topology):
    try:
        guest = resolve(topology, args.vm)
        status = engine.status(guest)
    except ProxmoxError as e:
        print(f"✗ {args.vm}: {e.kind}: {e.message}", file=sys.stderr)
        return 1
    if args.raw:
        _emit({'vmid': guest.id, 'node': guest.node.name, 'type': guest.type.value, **status})
        return 0
    if args.command == 'info':
        print("Guest Information:")
        print(f"  Node: {guest.node.name}")
        print(f"  VMID: {guest.id}")
        print(f"  Type: {guest.type.value}")
        print(f"  Name: {status.get('name', guest.name or 'Unknown')}")
        print(f"  Status: {status.get('status', 'unknown')}")
        if status.get('cpu') is not None:
            print(f"  CPU Usage: {float(status['cpu']) * 100:.2f}%")
        if status.get('mem') is not None and status.get('maxmem'):
            mem, maxmem = int(status['mem']), int(status['maxmem'])
            print(f"  Memory: {mem // 1048576} MB / {maxmem // 1048576} MB ({mem / maxmem * 100:.1f}%)")
    else:
        print(f"VM ID: {guest.id}")
        print(f"Name: {status.get('name', guest.name or 'Unknown')}")
        print(f"Node: {guest.node.name}")
        print(f"Status: {status.get('status', 'unknown')}")
        if status.get('status') == 'running' and status.get('uptime'):
            print(f"Uptime: {_format_uptime(status['uptime'])}")
    return 0


def _operation(args) -> Operation:
    if args.command == 'create':
        return Operation.create(args.snapname, args.description, args.vmstate)
    if args.command == 'delete':
        return Operation.delete(args.snapname)
    if args.command == 'rollback':
        return Operation.rollback(args.snapname)
    return Operation.list()


def run(args) -> int:
    overrides = {
        'host': args.host,
        'port': args.port,
        'token': args.token,
        'verify_ssl': args.verify_ssl,
        'timeout': args.timeout,
        'poll_interval': args.poll_interval,
        'concurrency': args.concurrency,
    }
    config = resolve_config(overrides, config_path=args.config, cluster=args.cluster)
    client, version = connect(config.host_list(), config.token, port=config.port, verify_ssl=config.verify_ssl,
                              timeout=config.request_timeout, pool_size=max(config.concurrency, 10))
    if args.command == 'test':
        return cmd_test(args, version)

    topology = discover(client)
    engine = SnapshotEngine(client, poll_interval=config.poll_interval, timeout=config.timeout)
    if args.command == 'list-nodes':
        return cmd_list_nodes(args, topology)
    if args.command == 'list-vms':
        return cmd_list_vms(args, topology)
    if args.command in ('info', 'check'):
        return cmd_guest_status(args, engine, topology)

    targets = parse_targets(args.vms)
    if not targets:
        print("✗ No target guests given", file=sys.stderr)
        return 1
    report = BatchExecutor(engine, config.concurrency).run(topology, targets, _operation(args))
    print_report(report, raw=args.raw)
    return report.exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    level = logging.WARNING if args.verbose == 0 else logging.INFO if args.verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s')
    try:
        return run(args)
    except ProxmoxAuthError as e:
        print(f"✗ Authentication failed: {e}", file=sys.stderr)
        return 1
    except ProxmoxError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
