import re
import threading

import pytest

from pvesnap.client import ProxmoxClient
from pvesnap.errors import NotFoundError, ProxmoxAPIError, ProxmoxNetworkError

TOKEN = 'root@pam!test=00000000-1111-2222-3333-444444444444'

GUEST_PATH = re.compile(r'^/nodes/([^/]+)/(qemu|lxc)/(\d+)(/.*)?$')
TASK_PATH = re.compile(r'^/nodes/([^/]+)/tasks/(.+)/status$')
LIST_PATH = re.compile(r'^/nodes/([^/]+)/(qemu|lxc)$')


class FakeCluster(ProxmoxClient):
    """ProxmoxClient whose HTTP layer is an in-memory Proxmox cluster."""

    def __init__(self):
        super().__init__('pve.example.com', TOKEN, verify_ssl=False)
        self.lock = threading.Lock()
        self.nodes = {}
        self.guests = {}
        self.tasks = {}
        self.requests = []
        self.unreachable = set()
        self.task_polls = 1
        self.fail = {}
        self.hang = set()
        self.clock = 1700000000
        self.upid_counter = 0

    def add_node(self, name, status='online', ip=None):
        self.nodes[name] = {'status': status, 'ip': ip or f'10.0.0.{len(self.nodes) + 1}'}

    def add_guest(self, vmid, node, name=None, guest_type='qemu', running=False, config=None, tags=None):
        self.guests[vmid] = {
            'vmid': vmid, 'node': node, 'name': name, 'type': guest_type,
            'status': 'running' if running else 'stopped', 'config': config or {},
            'tags': tags, 'snapshots': [], 'parent': None,
        }

    def add_snapshot(self, vmid, name, description='', vmstate=0):
        guest = self.guests[vmid]
        self.clock += 60
        guest['snapshots'].append({'name': name, 'description': description, 'snaptime': self.clock,
                                   'vmstate': vmstate, 'parent': guest['parent']})
        guest['parent'] = name

    def snapshot_names(self, vmid):
        return [s['name'] for s in self.guests[vmid]['snapshots']]

    def _new_task(self, node, vmid, task_type, effect):
        with self.lock:
            self.upid_counter += 1
            upid = f'UPID:{node}:0000{self.upid_counter:04X}:00000000:{self.clock:08X}:{task_type}:{vmid}:root@pam!test:'
            self.tasks[upid] = {'polls': 0, 'vmid': vmid, 'effect': effect, 'done': None}
        return upid

    def _request(self, method, path, data=None, params=None):
        with self.lock:
            self.requests.append((method, path, data))
        if path == '/version':
            return {'version': '8.2.4', 'release': '8.2', 'repoid': 'faa83925'}
        if path == '/cluster/status':
            entries = [{'type': 'cluster', 'name': 'testcluster', 'quorate': 1}]
            for name, node in self.nodes.items():
                entries.append({'type': 'node', 'name': name, 'ip': node['ip'],
                                'online': 1 if node['status'] == 'online' else 0})
            return entries
        if path == '/nodes':
            return [{'node': name, 'status': node['status']} for name, node in self.nodes.items()]

        match = LIST_PATH.match(path)
        if match:
            node, guest_type = match.groups()
            if node in self.unreachable:
                raise ProxmoxNetworkError(f"Connection to {node} failed")
            return [
                {'vmid': g['vmid'], 'name': g['name'], 'status': g['status'], 'tags': g['tags']}
                for g in self.guests.values() if g['node'] == node and g['type'] == guest_type
            ]

        match = TASK_PATH.match(path)
        if match:
            return self._task_status(match.group(2))

        match = GUEST_PATH.match(path)
        if match:
            return self._guest_request(method, int(match.group(3)), match.group(1), match.group(4) or '', data)
        raise NotFoundError(f"{method} {path}: no such endpoint")

    def _guest_request(self, method, vmid, node, rest, data):
        guest = self.guests.get(vmid)
        if guest is None or guest['node'] != node:
            raise ProxmoxAPIError(f"Configuration file for {vmid} does not exist", 500)
        if rest == '/config':
            return dict(guest['config'], name=guest['name'])
        if rest == '/status/current':
            return {'status': guest['status'], 'name': guest['name'], 'uptime': 93784, 'cpu': 0.05,
                    'mem': 536870912, 'maxmem': 2147483648}
        if rest == '/snapshot' and method == 'GET':
            entries = list(guest['snapshots'])
            entries.append({'name': 'current', 'description': 'You are here!', 'parent': guest['parent']})
            return entries
        if rest == '/snapshot' and method == 'POST':
            name = data['snapname']
            if name in self.snapshot_names(vmid):
                raise ProxmoxAPIError(f"snapshot name '{name}' already used", 500)
            vmstate = data.get('vmstate', 0)
            return self._new_task(node, vmid, 'qmsnapshot',
                                  lambda: self.add_snapshot(vmid, name, data.get('description', ''), vmstate))
        match = re.match(r'^/snapshot/([^/]+)(/rollback)?$', rest)
        if match:
            name, rollback = match.groups()
            if rollback and method == 'POST':
                def effect():
                    guest['parent'] = name
                    guest['status'] = 'stopped'
                return self._new_task(node, vmid, 'qmrollback', effect)
            if method == 'DELETE':
                def effect():
                    guest['snapshots'] = [s for s in guest['snapshots'] if s['name'] != name]
                return self._new_task(node, vmid, 'qmdelsnapshot', effect)
        raise NotFoundError(f"{method} {rest}: no such endpoint")

    def _task_status(self, upid):
        with self.lock:
            task = self.tasks.get(upid)
            if task is None:
                raise NotFoundError(f"no such task '{upid}'")
            if task['done'] is not None:
                return task['done']
            task['polls'] += 1
            vmid = task['vmid']
            if vmid in self.hang or task['polls'] <= self.task_polls:
                return {'status': 'running', 'upid': upid}
            if vmid in self.fail:
                task['done'] = {'status': 'stopped', 'exitstatus': self.fail[vmid], 'upid': upid}
            else:
                task['effect']()
                task['done'] = {'status': 'stopped', 'exitstatus': 'OK', 'upid': upid}
            return task['done']


@pytest.fixture
def cluster():
    """Three nodes; pve3 is unreachable. Two guests are both named 'web'."""
    fake = FakeCluster()
    fake.add_node('pve1')
    fake.add_node('pve2')
    fake.add_node('pve3')
    fake.add_guest(100, 'pve1', name='web', running=True)
    fake.add_guest(101, 'pve2', name='web')
    fake.add_guest(102, 'pve1', name='db', running=True,
                   config={'scsi0': 'local-lvm:vm-102-disk-0,size=32G', 'scsi1': 'luks-store:vm-102-disk-1,size=8G'})
    fake.add_guest(200, 'pve2', name='proxy', guest_type='lxc', running=True)
    fake.add_guest(300, 'pve3', name='hidden')
    fake.unreachable.add('pve3')
    return fake
