import logging
import os
import re
from typing import Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from pvesnap.batch import DEFAULT_CONCURRENCY
from pvesnap.client import DEFAULT_POLL_INTERVAL, DEFAULT_PORT, DEFAULT_TASK_TIMEOUT
from pvesnap.errors import ConfigError

logger = logging.getLogger(__name__)

TOKEN_REGEX = re.compile(r'^[^@\s]+@[^!\s]+![^=\s]+=\S+$')
DEFAULT_CONFIG_PATH = os.path.join('~', '.config', 'pvesnap', 'config.yaml')
MISSING_TOKEN = "API token is required. Set PROXMOX_API_TOKEN, use -t, or add to config file"

# environment variable -> config field
ENV_VARS = {
    'PROXMOX_HOST': 'host',
    'PROXMOX_PORT': 'port',
    'PROXMOX_API_TOKEN': 'token',
    'PROXMOX_VERIFY_SSL': 'verify_ssl',
    'PROXMOX_TIMEOUT': 'timeout',
}


class ClusterConfig(BaseModel):
    hosts: List[str]
    port: Optional[int] = None
    token: Optional[str] = None
    token_path: Optional[str] = None
    verify_ssl: Optional[bool] = None


class ProxmoxConfig(BaseModel):
    host: Optional[str] = None
    hosts: List[str] = []
    port: int = DEFAULT_PORT
    token: Optional[str] = None
    token_path: Optional[str] = None
    verify_ssl: bool = False
    timeout: float = DEFAULT_TASK_TIMEOUT
    request_timeout: float = 30
    poll_interval: float = DEFAULT_POLL_INTERVAL
    concurrency: int = DEFAULT_CONCURRENCY
    clusters: Dict[str, ClusterConfig] = {}

    @field_validator('verify_ssl', mode='before')
    @classmethod
    def _parse_bool(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ('1', 'true', 'yes', 'on'):
                return True
            if lowered in ('0', 'false', 'no', 'off', ''):
                return False
        return value

    @field_validator('token')
    @classmethod
    def _check_token(cls, value):
        if value is not None and not TOKEN_REGEX.match(value):
            raise ValueError("token must look like USER@REALM!TOKENID=SECRET")
        return value

    @field_validator('concurrency')
    @classmethod
    def _check_concurrency(cls, value):
        if value < 1:
            raise ValueError("concurrency must be at least 1")
        return value

    def host_list(self) -> List[str]:
        if self.hosts:
            return list(self.hosts)
        return [self.host] if self.host else []


def load_file(path: Optional[str], required: bool = False) -> Dict:
    """
    Read a YAML config file. A top-level 'proxmox' section is accepted as well.

    :param path: File path, '~' expanded
    :param required: Raise ConfigError when the file does not exist
    :return: Raw settings dictionary
    """
    if not path:
        return {}
    path = os.path.expanduser(path)
    if not os.path.exists(path):
        if required:
            raise ConfigError(f"Config file {path} not found")
        return {}
    with open(path, 'r') as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.debug(f"Loaded config from {path}")
    return raw.get('proxmox', raw)


def _read_token(token_path: str) -> str:
    try:
        with open(os.path.expanduser(token_path), 'r') as f:
            return f.read().strip()
    except OSError as e:
        raise ConfigError(f"Cannot read token file {token_path}: {e}")


def resolve_config(cli: Optional[Mapping] = None, env: Optional[Mapping] = None,
                   config_path: Optional[str] = None, cluster: Optional[str] = None) -> ProxmoxConfig:
    """
    Merge settings with precedence CLI flags > environment > config file > defaults.

    :param cli: Values given on the command line (None entries are ignored)
    :param env: Environment mapping, os.environ by default
    :param config_path: Explicit config file; PVESNAP_CONFIG or the default path otherwise
    :param cluster: Name of a 'clusters' entry in the file
    :return: Validated ProxmoxConfig with a token
    """
    env = os.environ if env is None else env
    explicit = config_path is not None
    path = config_path or env.get('PVESNAP_CONFIG') or DEFAULT_CONFIG_PATH
    settings = dict(load_file(path, required=explicit))

    if cluster:
        clusters = settings.get('clusters') or {}
        if cluster not in clusters:
            raise ConfigError(f"Cluster '{cluster}' not defined in {path}")
        selected = {k: v for k, v in clusters[cluster].items() if v is not None}
        settings.pop('host', None)
        if 'token' in selected or 'token_path' in selected:
            settings.pop('token', None)
            settings.pop('token_path', None)
        settings.update(selected)

    for var, field in ENV_VARS.items():
        if env.get(var):
            settings[field] = env[var]
            if field == 'host':
                settings.pop('hosts', None)

    for field, value in (cli or {}).items():
        if value is not None:
            settings[field] = value
            if field == 'host':
                settings.pop('hosts', None)

    if not settings.get('token') and settings.get('token_path'):
        settings['token'] = _read_token(settings['token_path'])

    try:
        config = ProxmoxConfig(**settings)
    except ValidationError as e:
        raise ConfigError(f"Invalid config: {e}")

    if not config.token:
        raise ConfigError(MISSING_TOKEN)
    if not config.host_list():
        raise ConfigError("Proxmox host is required. Set PROXMOX_HOST, use -H, or add to config file")
    return config
