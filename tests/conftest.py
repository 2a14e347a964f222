"""Shared fixtures for slabtop tests."""

import os

import pytest

SLABINFO_TEXT = """\
slabinfo - version: 2.1
# name            <active_objs> <num_objs> <objsize> <objperslab> <pagesperslab> : tunables <limit> <batchcount> <sharedfactor> : slabdata <active_slabs> <num_slabs> <sharedavail>
dentry                90    100    192   21    1 : tunables    0    0    0 : slabdata      5      5      0
kmalloc-64           300    400     64   64    1 : tunables    0    0    0 : slabdata      7      7      0
inode_cache           50    100    600   13    2 : tunables    0    0    0 : slabdata      8      8      0
buffer_head          100    100    104   39    1 : tunables    0    0    0 : slabdata      3      3      0
empty_cache            0      0    256   16    1 : tunables    0    0    0 : slabdata      0      0      0
"""

EMPTY_SLABINFO_TEXT = """\
slabinfo - version: 2.1
# name            <active_objs> <num_objs> <objsize> <objperslab> <pagesperslab> : tunables <limit> <batchcount> <sharedfactor> : slabdata <active_slabs> <num_slabs> <sharedavail>
"""


@pytest.fixture
def slabinfo_path(tmp_path):
    """A slabinfo file with five caches."""
    path = tmp_path / "slabinfo"
    path.write_text(SLABINFO_TEXT)
    return str(path)


@pytest.fixture
def empty_slabinfo_path(tmp_path):
    """A slabinfo file with no caches."""
    path = tmp_path / "slabinfo"
    path.write_text(EMPTY_SLABINFO_TEXT)
    return str(path)


@pytest.fixture
def key_pipe():
    """A (read_fd, write_fd) pair standing in for the keyboard."""
    rfd, wfd = os.pipe()
    fds = {"r": rfd, "w": wfd}
    yield fds
    for fd in fds.values():
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass
