import re
from typing import Hashable, Iterable, List, TypeVar

from .errors import ConfigurationError

T = TypeVar("T", bound=Hashable)

MIN_PORT = 1
MAX_PORT = 65535

_WHITESPACE = re.compile(r"\s+")


def strip_spec(spec: str) -> List[str]:
    """
    Drops all whitespace and splits on commas, skipping empty tokens.
    Example: " 80, ,443 " -> ["80", "443"]
    """
    return [token for token in _WHITESPACE.sub("", spec or "").split(",") if token]


def unique(items: Iterable[T]) -> List[T]:
    """De-duplicates while keeping first-appearance order."""
    return list(dict.fromkeys(items))


def _port(token: str, text: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise ConfigurationError(f"Invalid port '{token}': not a number")
    port = int(text)
    if not MIN_PORT <= port <= MAX_PORT:
        raise ConfigurationError(f"Invalid port '{token}': outside {MIN_PORT}-{MAX_PORT}")
    return port


def parse_ports(port_input: str) -> List[int]:
    """
    Parses a string of ports (commas, ranges) into an ordered list of unique integers.
    Example: "80,22,1000-1002,80" -> [80, 22, 1000, 1001, 1002]

    An empty spec gives an empty list (ping-only runs don't need ports).
    Raises ConfigurationError naming the first malformed token.
    """
    ports: List[int] = []
    for token in strip_spec(port_input):
        bounds = token.split("-")
        if len(bounds) == 1:
            ports.append(_port(token, bounds[0]))
        elif len(bounds) == 2:
            start, end = _port(token, bounds[0]), _port(token, bounds[1])
            if start > end:
                raise ConfigurationError(f"Invalid port range '{token}': start is greater than end")
            ports.extend(range(start, end + 1))
        else:
            raise ConfigurationError(f"Invalid port range '{token}'")
    return unique(ports)
