# slabinfo.py
"""
Slabinfo — collector side of the two-module (collector + monitor) design.

Reads the kernel slab allocator statistics from /proc/slabinfo and exposes
them as a small handle-based API consumed by slabtop.py:

- open the source once and reread it every cycle
- fill a preallocated buffer of per-cache records (reused, never regrown)
- stable sort of the live prefix by one of the sortable fields
- aggregate summary over every cache of the last read

Requirements:
  Stdlib only (os, enum, dataclasses, operator)

/proc/slabinfo format (version 2.x):
  # name <active_objs> <num_objs> <objsize> <objperslab> <pagesperslab> : tunables ... : slabdata <active_slabs> <num_slabs> <sharedavail>
"""
from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from operator import attrgetter
from typing import IO, List, Optional

SLABINFO_PATH = "/proc/slabinfo"


class SlabInfoError(Exception):
    """Raised for any failure to open, read, parse or sort slab data."""


# -------------------------
# Records
# -------------------------

class SortField(enum.Enum):
    # value is the SlabNode attribute the field orders by
    OBJS = "nr_objs"
    AOBJS = "nr_active_objs"
    USE = "use"
    OBJ_SIZE = "obj_size"
    SLABS = "nr_slabs"
    OBJS_PER_SLAB = "objs_per_slab"
    SIZE = "cache_size"
    NAME = "name"
    # sortable, never displayed
    PAGES_PER_SLAB = "pages_per_slab"
    ASLABS = "nr_active_slabs"


@dataclass
class SlabNode:
    name: str = ""
    nr_objs: int = 0
    nr_active_objs: int = 0
    obj_size: int = 0
    objs_per_slab: int = 0
    pages_per_slab: int = 0
    nr_slabs: int = 0
    nr_active_slabs: int = 0
    use: int = 0  # percent of objects in use
    cache_size: int = 0  # bytes

    def assign(self, other: SlabNode) -> None:
        """Overwrite every field in place with the values of ``other``."""
        self.name = other.name
        self.nr_objs = other.nr_objs
        self.nr_active_objs = other.nr_active_objs
        self.obj_size = other.obj_size
        self.objs_per_slab = other.objs_per_slab
        self.pages_per_slab = other.pages_per_slab
        self.nr_slabs = other.nr_slabs
        self.nr_active_slabs = other.nr_active_slabs
        self.use = other.use
        self.cache_size = other.cache_size


@dataclass
class SlabSummary:
    nr_objs: int = 0
    nr_active_objs: int = 0
    nr_slabs: int = 0
    nr_active_slabs: int = 0
    nr_caches: int = 0
    nr_active_caches: int = 0
    total_size: int = 0
    active_size: int = 0
    min_obj_size: int = 0
    avg_obj_size: int = 0
    max_obj_size: int = 0


# -------------------------
# Parsing
# -------------------------

def parse_version(line: str) -> str:
    # "slabinfo - version: 2.1"
    head, sep, version = line.partition("version:")
    if not sep or not head.strip().startswith("slabinfo"):
        raise SlabInfoError(f"Unrecognized slabinfo header: {line.strip()!r}")
    version = version.strip()
    if version.split(".")[0] != "2":
        raise SlabInfoError(f"Unsupported slabinfo version: {version}")
    return version


def parse_line(line: str, page_size: int) -> SlabNode:
    sections = [s.split() for s in line.split(":")]
    head = sections[0]
    slabdata = next((s for s in sections[1:] if s and s[0] == "slabdata"), None)
    if len(head) < 6 or slabdata is None or len(slabdata) < 3:
        raise SlabInfoError(f"Malformed slabinfo line: {line.strip()!r}")
    try:
        active_objs, num_objs, obj_size, objs_per_slab, pages_per_slab = (int(v) for v in head[1:6])
        active_slabs, num_slabs = int(slabdata[1]), int(slabdata[2])
    except ValueError:
        raise SlabInfoError(f"Malformed slabinfo line: {line.strip()!r}") from None

    use = int(100 * active_objs / num_objs) if num_objs else 0
    return SlabNode(
        name=head[0],
        nr_objs=num_objs,
        nr_active_objs=active_objs,
        obj_size=obj_size,
        objs_per_slab=objs_per_slab,
        pages_per_slab=pages_per_slab,
        nr_slabs=num_slabs,
        nr_active_slabs=active_slabs,
        use=use,
        cache_size=num_slabs * pages_per_slab * page_size,
    )


def parse_slabinfo(text: str, page_size: int) -> List[SlabNode]:
    lines = text.splitlines()
    if not lines:
        raise SlabInfoError("Empty slabinfo")
    parse_version(lines[0])
    nodes: List[SlabNode] = []
    for line in lines[1:]:
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        nodes.append(parse_line(line, page_size))
    return nodes


def summarize(nodes: List[SlabNode]) -> SlabSummary:
    stats = SlabSummary()
    for n in nodes:
        stats.nr_objs += n.nr_objs
        stats.nr_active_objs += n.nr_active_objs
        stats.nr_slabs += n.nr_slabs
        stats.nr_active_slabs += n.nr_active_slabs
        stats.nr_caches += 1
        if n.nr_active_objs > 0:
            stats.nr_active_caches += 1
        stats.total_size += n.nr_objs * n.obj_size
        stats.active_size += n.nr_active_objs * n.obj_size
    if nodes:
        stats.min_obj_size = min(n.obj_size for n in nodes)
        stats.max_obj_size = max(n.obj_size for n in nodes)
    if stats.nr_objs:
        stats.avg_obj_size = stats.total_size // stats.nr_objs
    return stats


# -------------------------
# Handle
# -------------------------

def default_page_size() -> int:
    try:
        return os.sysconf("SC_PAGE_SIZE")
    except (ValueError, OSError, AttributeError):
        return 4096


class SlabInfo:
    """
    Handle on the kernel slab statistics source.

    The file stays open for the handle's lifetime and is reread from the
    start on every fill, the way the kernel expects /proc files to be
    polled.
    """

    def __init__(self, fh: IO[str], path: str, page_size: int) -> None:
        self._fh: Optional[IO[str]] = fh
        self.path = path
        self.page_size = page_size
        self.total_caches = 0
        self._nodes: Optional[List[SlabNode]] = None

    @classmethod
    def open(cls, path: str = SLABINFO_PATH, page_size: Optional[int] = None) -> SlabInfo:
        try:
            fh = open(path, "r", encoding="utf-8", errors="replace")
        except OSError as e:
            raise SlabInfoError(f"Unable to open {path}: {e.strerror or e}") from e
        return cls(fh, path, page_size or default_page_size())

    def __enter__(self) -> SlabInfo:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._fh is None

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def read(self) -> List[SlabNode]:
        """Reread the source and return a fresh record per cache."""
        if self._fh is None:
            raise SlabInfoError("slabinfo handle is closed")
        try:
            self._fh.seek(0)
            text = self._fh.read()
        except OSError as e:
            raise SlabInfoError(f"Unable to read {self.path}: {e.strerror or e}") from e
        nodes = parse_slabinfo(text, self.page_size)
        self._nodes = nodes
        self.total_caches = len(nodes)
        return nodes

    def allocate_chain_buffer(self, capacity: int) -> List[SlabNode]:
        if capacity < 1:
            raise SlabInfoError(f"Invalid buffer capacity: {capacity}")
        return [SlabNode() for _ in range(capacity)]

    def fill(self, buffer: List[SlabNode], capacity: int) -> int:
        """
        Read the source and overwrite the head of ``buffer`` in place.

        Returns the number of live nodes. Caches that do not fit are
        dropped; compare the result with ``total_caches`` to detect it.
        """
        nodes = self.read()
        live = min(len(nodes), capacity, len(buffer))
        for slot, node in zip(buffer[:live], nodes):
            slot.assign(node)
        return live

    def sort(self, buffer: List[SlabNode], live: int, field: SortField) -> List[SlabNode]:
        if not 0 <= live <= len(buffer):
            raise SlabInfoError(f"Cannot sort {live} nodes in a buffer of {len(buffer)}")
        # sorted() keeps equal keys in fetch order, reverse=True included
        ordered = sorted(buffer[:live], key=attrgetter(field.value), reverse=field is not SortField.NAME)
        return ordered + buffer[live:]

    def get_summary(self) -> SlabSummary:
        if self._nodes is None:
            raise SlabInfoError("No slabinfo read yet")
        return summarize(self._nodes)
