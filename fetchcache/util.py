import dataclasses
from enum import Enum
import json
import time
from types import MappingProxyType

from .model import Response


def now_millis() -> float:
    return time.time() * 1000


def estimate_size(response: Response) -> int:
    """
    Estimate the memory consumed by a response.

    This is only an estimate: the body length plus the length of each header name and value.
    """
    headers_size = sum(len(name) + len(value) for name, value in response.headers.items())
    return len(response.body) + headers_size


def format_bytes(size: int) -> str:
    if size <= 0:
        return '0 Bytes'
    units = ['Bytes', 'KB', 'MB', 'GB']
    exponent = 0
    value = float(size)
    while value >= 1024 and exponent < len(units) - 1:
        value /= 1024
        exponent += 1
    return '{:g} {}'.format(round(value, 2), units[exponent])


class DataclassJSONEncoder(json.JSONEncoder):
    def default(self, o):
        if dataclasses.is_dataclass(o):
            return dataclasses.asdict(o)
        if isinstance(o, Enum):
            return o.value
        if isinstance(o, (set, frozenset)):
            return sorted(o)
        if isinstance(o, MappingProxyType):
            return dict(o)
        return super().default(o)
