"""
Cluster discovery and guest resolution.

The topology is built fresh by every invocation and passed explicitly to
whoever needs it; nothing here caches across runs.
"""

import logging
import re
from typing import Dict, List

from pvesnap.client import ProxmoxClient
from pvesnap.errors import (
    AmbiguousNameError,
    NotFoundError,
    ProxmoxAPIError,
    ProxmoxNetworkError,
)
from pvesnap.models import ClusterNode, ClusterTopology, Guest, GuestType

logger = logging.getLogger(__name__)

VMID_REGEX = re.compile(r'^\d+$')


def _cluster_status(client: ProxmoxClient) -> List[Dict]:
    try:
        return client.call(None, 'GET', '/cluster/status') or []
    except (ProxmoxAPIError, NotFoundError, ProxmoxNetworkError) as e:
        logger.debug(f"Cluster status unavailable: {e}")
        return []


def _list_nodes(client: ProxmoxClient, status_entries: List[Dict]) -> List[Dict]:
    try:
        return client.call(None, 'GET', '/nodes') or []
    except (ProxmoxAPIError, NotFoundError) as e:
        logger.warning(f"Listing /nodes failed ({e}), falling back to /cluster/status")
    nodes = []
    for item in status_entries:
        if item.get('type') != 'node':
            continue
        name = item.get('node') or item.get('name')
        if name:
            online = item.get('online', 1)
            nodes.append({'node': name, 'status': 'online' if online else 'offline'})
    if not nodes:
        raise ProxmoxAPIError("No cluster nodes could be listed")
    return nodes


def _list_guests(client: ProxmoxClient, node: ClusterNode) -> List[Guest]:
    guests = []
    for guest_type in GuestType:
        for item in client.call(node, 'GET', f'/{guest_type.value}') or []:
            guests.append(Guest(
                id=int(item['vmid']),
                name=item.get('name') or None,
                type=guest_type,
                node=node,
                running=item.get('status') == 'running',
                tags=item.get('tags') or None,
            ))
    return guests


def discover(client: ProxmoxClient) -> ClusterTopology:
    """
    List every cluster node and the guests each one hosts.

    A node that is offline or whose guest listing fails is kept with
    online=False and contributes no guests. Authentication errors propagate.

    :param client: Connected ProxmoxClient
    :return: ClusterTopology
    """
    status_entries = _cluster_status(client)
    addresses = {
        item.get('name'): item.get('ip')
        for item in status_entries
        if item.get('type') == 'node'
    }
    nodes = []
    guests = []
    for item in sorted(_list_nodes(client, status_entries), key=lambda n: n['node']):
        name = item['node']
        node = ClusterNode(name=name, address=addresses.get(name), online=item.get('status') == 'online')
        if not node.online:
            logger.warning(f"Node {name} is {item.get('status', 'unknown')}, its guests are not visible")
            nodes.append(node)
            continue
        try:
            node_guests = _list_guests(client, node)
        except (ProxmoxNetworkError, ProxmoxAPIError, NotFoundError) as e:
            logger.warning(f"Node {name} unreachable, its guests are not visible: {e}")
            nodes.append(node.model_copy(update={'online': False}))
            continue
        nodes.append(node)
        guests.extend(node_guests)
    guests.sort(key=lambda g: g.id)
    logger.info(f"Discovered {len(nodes)} nodes and {len(guests)} guests")
    return ClusterTopology(nodes=tuple(nodes), guests=tuple(guests))


def resolve(topology: ClusterTopology, identifier: str) -> Guest:
    """
    Resolve a numeric VMID or an exact guest name to a Guest.

    :param topology: Result of discover()
    :param identifier: User-supplied identifier
    :return: The matching Guest
    """
    if VMID_REGEX.match(identifier):
        guest = topology.by_id(int(identifier))
        if guest is None:
            raise NotFoundError(f"Guest {identifier} not found in cluster")
        return guest
    matches = topology.by_name(identifier)
    if not matches:
        raise NotFoundError(f"Guest '{identifier}' not found in cluster")
    if len(matches) > 1:
        raise AmbiguousNameError(identifier, [g.id for g in matches])
    return matches[0]
