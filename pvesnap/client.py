import logging
import time
from typing import Any, Dict, List, Optional, Union

import requests
import urllib3
from requests.adapters import HTTPAdapter

from pvesnap.errors import (
    NotFoundError,
    ProxmoxAPIError,
    ProxmoxAuthError,
    ProxmoxNetworkError,
    TaskFailedError,
    TaskTimeoutError,
)
from pvesnap.models import ClusterNode, Immediate, Task, TaskStatus, parse_upid

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8006
DEFAULT_POLL_INTERVAL = 2
DEFAULT_TASK_TIMEOUT = 300

NodeRef = Union[ClusterNode, str, None]


def split_host(host: str, default_port: int = DEFAULT_PORT):
    """
    Split 'host[:port]' or '[ipv6]:port' into (host, port).

    A bare IPv6 address has no port; a non-numeric port is kept as part of the host.
    """
    if host.startswith('['):
        addr, _, rest = host[1:].partition(']')
        if rest.startswith(':') and rest[1:].isdigit():
            return addr, int(rest[1:])
        return addr, default_port
    if host.count(':') == 1:
        name, _, port = host.rpartition(':')
        if port.isdigit():
            return name, int(port)
    return host, default_port


def _error_text(resp) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text.strip() or resp.reason
    if isinstance(body, dict):
        if body.get('errors'):
            errors = body['errors']
            if isinstance(errors, dict):
                return '; '.join(f"{k}: {v}" for k, v in errors.items())
            return str(errors)
        if body.get('message'):
            return str(body['message']).strip()
    return resp.reason or str(body)


class ProxmoxClient:
    def __init__(self, host, token, port=DEFAULT_PORT, verify_ssl=True, timeout=30, pool_size=10):
        """
        Initialize the Proxmox API client.

        :param host: Proxmox host (e.g., 'pve.example.com')
        :param token: API token in 'user@realm!tokenid=secret' format
        :param port: API port
        :param verify_ssl: Whether to verify SSL certificates
        :param timeout: Request timeout in seconds
        :param pool_size: Connection pool size, at least the number of concurrent workers
        """
        self.host = host
        self.port = port
        self.token = token
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        netloc = f"[{host}]" if ':' in host else host
        self.base_url = f"https://{netloc}:{port}/api2/json"
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        self.session = requests.Session()
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
        self.session.mount('https://', adapter)
        self.session.headers.update({
            'Authorization': f'PVEAPIToken={token}',
            'Accept': 'application/json',
        })

    def _request(self, method, path, data=None, params=None):
        """
        Send one request and return the response's 'data' member.

        :param method: HTTP method
        :param path: Absolute API path (e.g., '/nodes')
        :param data: Form parameters for POST/PUT
        :param params: Query parameters
        :return: Decoded 'data' value of the JSON response
        """
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, data=data, params=params,
                                        verify=self.verify_ssl, timeout=self.timeout)
        except requests.exceptions.SSLError as e:
            raise ProxmoxNetworkError(f"SSL verification failed for {self.host}: {e}")
        except requests.exceptions.Timeout:
            raise ProxmoxNetworkError(f"Request to {self.host} timed out ({method} {path})")
        except requests.exceptions.ConnectionError as e:
            raise ProxmoxNetworkError(f"Connection to {self.host} failed: {e}")
        except requests.exceptions.RequestException as e:
            raise ProxmoxNetworkError(f"Request to {self.host} failed: {e}")

        status = resp.status_code
        if status in (401, 403):
            raise ProxmoxAuthError(f"Authentication failed ({status}): {_error_text(resp)}")
        if status == 404:
            raise NotFoundError(f"{method} {path}: {_error_text(resp)}")
        if not 200 <= status < 300:
            raise ProxmoxAPIError(_error_text(resp), status)
        try:
            body = resp.json()
        except ValueError:
            raise ProxmoxAPIError(f"Invalid JSON in response to {method} {path}", status)
        if isinstance(body, dict) and 'data' in body:
            return body['data']
        return body

    @staticmethod
    def _node_name(node: NodeRef) -> Optional[str]:
        if isinstance(node, ClusterNode):
            return node.name
        return node

    def call(self, node: NodeRef, method: str, path: str, data: Optional[Dict] = None,
             params: Optional[Dict] = None) -> Any:
        """
        Execute one API call.

        :param node: Node (or node name) the path is relative to, None for an absolute path
        :param method: HTTP method
        :param path: API path, e.g. '/qemu/100/snapshot' with a node or '/cluster/status' without
        :param data: Request parameters
        :return: The response's data value
        """
        name = self._node_name(node)
        full_path = f'/nodes/{name}{path}' if name else path
        return self._request(method.upper(), full_path, data=data, params=params)

    def submit(self, node: NodeRef, method: str, path: str, data: Optional[Dict] = None) -> Union[Immediate, Task]:
        """
        Execute a mutating call and normalize its result.

        :return: A running Task when the API answered with a UPID, an Immediate otherwise
        """
        result = self.call(node, method, path, data=data)
        if isinstance(result, str) and result.startswith('UPID:'):
            if isinstance(node, ClusterNode):
                task_node = node
            else:
                task_node = ClusterNode(name=node or parse_upid(result)['node'])
            logger.info(f"{method.upper()} {path} on {task_node.name} initiated, UPID: {result}")
            return Task(upid=result, node=task_node)
        logger.info(f"{method.upper()} {path} completed synchronously")
        return Immediate(value=result)

    def task_status(self, task: Task) -> Task:
        """
        Query the node for the current status of a task.

        :param task: Task to query
        :return: A copy of the task with its status updated
        """
        data = self.call(task.node, 'GET', f'/tasks/{task.upid}/status') or {}
        if data.get('status') != 'stopped':
            return task
        exitstatus = data.get('exitstatus') or 'unknown'
        if exitstatus == 'OK' or exitstatus.startswith('WARNINGS'):
            if exitstatus != 'OK':
                logger.warning(f"Task {task.upid} finished with {exitstatus}")
            return task.model_copy(update={'status': TaskStatus.OK, 'exit_message': exitstatus})
        return task.model_copy(update={'status': TaskStatus.ERROR, 'exit_message': exitstatus})

    def await_task(self, task: Task, poll_interval=DEFAULT_POLL_INTERVAL, timeout=DEFAULT_TASK_TIMEOUT) -> Task:
        """
        Poll a node task until it reaches a terminal status.

        The first poll happens one interval after the call. Network errors
        while polling are retried until the deadline; the task itself is
        never resubmitted.

        :param task: Task returned by submit()
        :param poll_interval: Seconds between polls
        :param timeout: Seconds before giving up with TaskTimeoutError
        :return: The terminal task (status ok)
        """
        deadline = time.time() + timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise TaskTimeoutError(task.upid, timeout)
            time.sleep(min(poll_interval, remaining))
            try:
                current = self.task_status(task)
            except ProxmoxNetworkError as e:
                logger.warning(f"Polling task {task.upid} failed, retrying: {e}")
                continue
            if current.status is TaskStatus.OK:
                logger.info(f"Task {task.upid} completed successfully")
                return current
            if current.status is TaskStatus.ERROR:
                logger.error(f"Task {task.upid} failed with exitstatus: {current.exit_message}")
                raise TaskFailedError(task.upid, current.exit_message)
            logger.debug(f"Task {task.upid} still running...")

    def version(self) -> Dict:
        """
        Fetch the API version, used as the connection and token test.

        :return: Version dictionary (version, release, repoid)
        """
        return self.call(None, 'GET', '/version')


def connect(hosts: List[str], token, port=DEFAULT_PORT, verify_ssl=True, timeout=30, pool_size=10):
    """
    Return a client for the first host that answers /version.

    :param hosts: Candidate hosts, each 'host' or 'host:port'
    :return: (client, version dict)
    """
    if not hosts:
        raise ProxmoxNetworkError("No Proxmox host configured")
    failures = []
    for entry in hosts:
        host, host_port = split_host(entry, port)
        client = ProxmoxClient(host, token, port=host_port, verify_ssl=verify_ssl,
                               timeout=timeout, pool_size=pool_size)
        try:
            version = client.version()
        except ProxmoxAuthError:
            raise
        except (ProxmoxNetworkError, ProxmoxAPIError, NotFoundError) as e:
            logger.warning(f"Host {host}:{host_port} unavailable: {e}")
            failures.append(f"{host}:{host_port}: {e}")
            continue
        logger.info(f"Connected to {host}:{host_port}")
        return client, version
    raise ProxmoxNetworkError("All hosts failed: " + '; '.join(failures))
