#
# Quickshare
# License: MIT
#

import os
import threading
import unicodedata
from dataclasses import dataclass, replace
from typing import Optional


class ShareExistsError(Exception):
    pass


class InvalidShareError(ValueError):
    pass


@dataclass(frozen=True)
class Share:
    name: str
    path: str
    # reserved, nothing expires shares yet
    timeout: Optional[float] = None

    def __post_init__(self):
        # names end up in listings and HTTP headers
        if not self.name or any(unicodedata.category(c) == 'Cc' for c in self.name):
            raise InvalidShareError(f"Invalid share name '{self.name}'")

    # `path` or `name:path`, the name defaults to the last path segment
    @classmethod
    def parse(cls, spec, cwd=None):
        name, sep, path = spec.partition(':')
        if not sep:
            path = spec
            name = path.rstrip('/').split('/')[-1]
        if not name or not path:
            raise InvalidShareError(f"Invalid share '{spec}'")
        return cls(name, absolute_path(path, cwd))

    def spec(self):
        return f"{self.name}:{self.path}"


def absolute_path(path, cwd=None):
    if os.path.isabs(path):
        return os.path.normpath(path)
    return os.path.normpath(os.path.join(cwd or os.getcwd(), path))


class ShareRegistry:
    """Ordered name -> Share mapping, every operation holds the lock."""

    def __init__(self, shares=()):
        self.lock = threading.Lock()
        self.shares = {}
        for share in shares:
            self.add(share)

    def add(self, share):
        if not os.path.isabs(share.path):
            share = replace(share, path=absolute_path(share.path))
        with self.lock:
            if share.name in self.shares:
                raise ShareExistsError(share.name)
            self.shares[share.name] = share
        return share

    def add_spec(self, spec, cwd=None):
        return self.add(Share.parse(spec, cwd))

    def remove(self, name):
        with self.lock:
            return self.shares.pop(name, None) is not None

    def lookup(self, name):
        with self.lock:
            return self.shares.get(name)

    def list(self):
        with self.lock:
            return list(self.shares.values())

    def __contains__(self, name):
        return self.lookup(name) is not None

    def __len__(self):
        with self.lock:
            return len(self.shares)
