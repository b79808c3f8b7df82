import ipaddress
import re
from urllib.parse import urlsplit

import requests

from .log import get_logger

logger = get_logger("judge.webhook")

ALLOWED_SCHEMES = ('http', 'https')

LOOPBACK_HOSTS = (
    'localhost',
    '127.0.0.1',
    '0.0.0.0',
    '::1',
    '0:0:0:0:0:0:0:1',
)

PRIVATE_IPV4_NETWORKS = tuple(ipaddress.ip_network(net) for net in (
    '10.0.0.0/8',
    '172.16.0.0/12',
    '192.168.0.0/16',
    '169.254.0.0/16',
    '100.64.0.0/10',
    '127.0.0.0/8',
    '0.0.0.0/32',
))

PRIVATE_IPV6_NETWORKS = tuple(ipaddress.ip_network(net) for net in (
    'fe80::/10',   # link-local
    'fc00::/7',    # unique local
    'ff00::/8',    # multicast
    '::1/128',
    '::/128',
))

BLOCKED_SUFFIXES = ('.local', '.internal', '.localhost', '.test', '.example', '.invalid')

INTERNAL_DNS_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r'^(.*\.)?internal$',
    r'^(.*\.)?corp$',
    r'^(.*\.)?intranet$',
    r'^(.*\.)?lan$',
))

METADATA_HOSTS = ('169.254.169.254', 'metadata.google.internal', 'metadata')


def _unwrap(hostname: str) -> str:
    if hostname.startswith('[') and hostname.endswith(']'):
        return hostname[1:-1]
    return hostname


def _is_private_address(hostname: str) -> bool:
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    if address.version == 4:
        return any(address in net for net in PRIVATE_IPV4_NETWORKS)
    if address.ipv4_mapped is not None:
        return _is_private_address(str(address.ipv4_mapped))
    return any(address in net for net in PRIVATE_IPV6_NETWORKS)


def is_allowed_webhook_url(url: str) -> bool:
    """コールバック先が内部ネットワーク・メタデータエンドポイントでないか判定する"""
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError:
        return False
    if parts.scheme.lower() not in ALLOWED_SCHEMES or not hostname:
        return False

    hostname = _unwrap(hostname.lower()).rstrip('.')

    if any(hostname == host or hostname.startswith(host + '.') for host in LOOPBACK_HOSTS):
        return False
    if _is_private_address(hostname):
        return False
    if hostname.endswith(BLOCKED_SUFFIXES):
        return False
    if hostname in METADATA_HOSTS:
        return False
    if any(pattern.match(hostname) for pattern in INTERNAL_DNS_PATTERNS):
        return False
    return True


def build_payload(token: str, result, status_id: int) -> dict:
    return {
        'token': token,
        'stdout': result.stdout,
        'stderr': result.stderr,
        'time': result.time,
        'memory': result.memory,
        'status': {'id': int(status_id)},
    }


class WebhookNotifier:
    """判定結果をコールバックURLへPUTする。1回だけ試行し、失敗はログのみ"""

    def __init__(self, timeout: float = 10, session=None):
        self.timeout = timeout
        self.session = session or requests

    def notify(self, url: str, payload: dict) -> bool:
        if not is_allowed_webhook_url(url):
            logger.warning("webhook url rejected [token=%s]: %s", payload.get('token'), url)
            return False
        try:
            resp = self.session.put(url, json=payload, timeout=self.timeout)
            logger.debug("webhook response [token=%s]: %s", payload.get('token'), resp.status_code)
            if not resp.ok:
                logger.warning("webhook returned %s [token=%s]", resp.status_code, payload.get('token'))
            return resp.ok
        except requests.RequestException as e:
            logger.warning("webhook failed [token=%s]: %s", payload.get('token'), e)
            return False
