"""
Target resolution.

A target spec is a comma separated list of tokens. Each token is, in order
of precedence: a readable file (one IP / CIDR / hostname per line), an IP
literal, a CIDR block, or a hostname.

CIDR blocks expand to every address they contain, network and broadcast
included (10.0.0.0/30 -> 4 targets). With hosts_only=True the network and
broadcast addresses are dropped from blocks larger than two addresses
(10.0.0.0/30 -> 10.0.0.1, 10.0.0.2); /31 and /32 are always kept whole.
"""

import ipaddress
import logging
import os
import socket
from typing import Callable, Iterable, List, Optional

from .errors import ConfigurationError, PartialResolutionWarning
from .models import Target
from .utils import strip_spec, unique

logger = logging.getLogger(__name__)


def system_resolve(hostname: str) -> List[str]:
    """Every address the system resolver knows for hostname, in resolver order."""
    infos = socket.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return unique(info[4][0] for info in infos)


class TargetResolver:
    def __init__(self, hosts_only: bool = False, resolve: Optional[Callable[[str], List[str]]] = None):
        self.hosts_only = hosts_only
        self._resolve = resolve or system_resolve
        self.warnings: List[PartialResolutionWarning] = []

    def resolve(self, spec: str) -> List[Target]:
        """
        Returns the de-duplicated, order-stable union of every address in spec.
        Bad tokens are warned about and skipped; only an empty result is fatal.
        """
        self.warnings = []
        targets: List[Target] = []
        for token in strip_spec(spec):
            if os.path.isfile(token):
                targets.extend(self._from_file(token))
            else:
                targets.extend(self._from_token(token))

        targets = unique(targets)
        if not targets:
            raise ConfigurationError(f"No targets could be resolved from '{spec}'")
        logger.info("Resolved %d target(s) from '%s'", len(targets), spec)
        return targets

    def _warn(self, token: str, reason: str):
        warning = PartialResolutionWarning(token, reason)
        self.warnings.append(warning)
        logger.warning("%s", warning)

    def _from_file(self, path: str) -> List[Target]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                lines = f.read().splitlines()
        except (OSError, UnicodeDecodeError) as e:
            self._warn(path, f"unreadable file ({e})")
            return []

        targets: List[Target] = []
        for line in lines:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            targets.extend(self._from_token(line))
        return targets

    def _from_token(self, token: str) -> List[Target]:
        # 1. IP literal
        try:
            return [Target(ipaddress.ip_address(token), token)]
        except ValueError:
            pass

        # 2. CIDR block
        if "/" in token:
            try:
                network = ipaddress.ip_network(token, strict=False)
            except ValueError as e:
                self._warn(token, f"malformed CIDR ({e})")
                return []
            return [Target(ip, token) for ip in self._expand(network)]

        # 3. Hostname
        try:
            addresses = self._resolve(token)
        except (socket.gaierror, UnicodeError, OSError) as e:
            self._warn(token, f"name lookup failed ({e})")
            return []
        if not addresses:
            self._warn(token, "name lookup returned no addresses")
            return []
        return [Target(ipaddress.ip_address(address), token) for address in addresses]

    def _expand(self, network) -> Iterable:
        if self.hosts_only and network.num_addresses > 2:
            return network.hosts()
        return iter(network)


def resolve_targets(spec: str, hosts_only: bool = False) -> List[Target]:
    return TargetResolver(hosts_only=hosts_only).resolve(spec)
