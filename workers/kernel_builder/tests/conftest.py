"""
Shared pytest fixtures for kernel_builder tests.

Instead of a real kernel tree the pipelines are pointed at a tiny source
directory whose Makefile implements oldconfig / bzImage / distclean with
shell one-liners, so the full make → sandbox → diagnosis path runs in
milliseconds.

Requirements:
  - make and bash must be available (tests using them are skipped otherwise)
"""
import dataclasses
import fnmatch
import shutil
import textwrap
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from kernel_builder.policy.profile import Profile

TEST_CONFIG = b"CONFIG_64BIT=y\nCONFIG_KASAN=y\n"

# Recipes must be tab-indented.
GOOD_MAKEFILE = textwrap.dedent("""\
    oldconfig:
    \t@test -f .config
    \t@echo "CONFIG_RESOLVED=y" >> .config
    \t@echo "$(CC)" > cc.txt

    bzImage:
    \t@echo "  CC      kernel/fork.o"
    \t@mkdir -p arch/x86/boot
    \t@cp .config arch/x86/boot/bzImage

    distclean:
    \t@rm -rf arch .config cc.txt
""")

COMPILE_ERROR_MAKEFILE = textwrap.dedent("""\
    oldconfig:
    \t@test -f .config

    bzImage:
    \t@echo "  CC      kernel/fork.o"
    \t@echo "kernel/fork.c:10:5: error: expected ';' before 'return'" >&2
    \t@echo "make[1]: *** [scripts/Makefile.build:280: kernel/fork.o] Error 1" >&2
    \t@exit 1

    distclean:
    \t@echo "distclean: cannot remove include/generated" >&2
    \t@exit 2
""")

LINK_ERROR_MAKEFILE = textwrap.dedent("""\
    oldconfig:
    \t@test -f .config

    bzImage:
    \t@echo "  LD      vmlinux.o"
    \t@echo "ld: final link failed: No space left on device" >&2
    \t@echo "collect2: error: ld returned 1 exit status" >&2
    \t@exit 1
""")

UNEXPLAINED_MAKEFILE = textwrap.dedent("""\
    oldconfig:
    \t@test -f .config

    bzImage:
    \t@echo "Killed"
    \t@exit 2
""")

OLDCONFIG_ERROR_MAKEFILE = textwrap.dedent("""\
    oldconfig:
    \t@echo "scripts/kconfig/conf.c:42: error: unexpected symbol" >&2
    \t@exit 1

    bzImage:
    \t@exit 0
""")


def _tool_ok(name: str) -> bool:
    return shutil.which(name) is not None


@pytest.fixture(scope="session")
def make_ok():
    """Skip tests if make is not available."""
    if not _tool_ok("make"):
        pytest.skip("make not available - install make to run these tests")


@pytest.fixture(scope="session")
def bash_ok():
    """Skip tests if bash is not available."""
    if not _tool_ok("bash"):
        pytest.skip("bash not available")


@pytest.fixture
def profile() -> Profile:
    """v0 profile without sandboxing and with short timeouts."""
    return dataclasses.replace(
        Profile.v0(),
        restrict_privileges=False,
        restrict_filesystem=False,
        defconfig_timeout=30,
        compile_timeout=30,
        clean_timeout=30,
        image_timeout=30,
        kill_grace=2,
    )


@pytest.fixture
def kernel_tree(tmp_path, make_ok):
    """Factory: create a fake kernel tree with the given Makefile."""
    counter = {"n": 0}

    def _make(makefile: str = GOOD_MAKEFILE) -> Path:
        counter["n"] += 1
        d = tmp_path / f"linux{counter['n']}"
        d.mkdir()
        (d / "Makefile").write_text(makefile)
        return d

    return _make


class FakeRedis:
    """In-memory stand-in for the few redis.Redis calls we make."""

    def __init__(self):
        self.lists: Dict[str, List[str]] = {}
        self.values: Dict[str, str] = {}

    def ping(self):
        return True

    def rpush(self, key: str, value: str):
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    def lrange(self, key: str, start: int, end: int):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    def blpop(self, keys, timeout: int = 0):
        for key in keys:
            if self.lists.get(key):
                return key, self.lists[key].pop(0)
        return None

    def set(self, key: str, value: str):
        self.values[key] = value
        return True

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def keys(self, pattern: str = "*"):
        return [k for k in self.values if fnmatch.fnmatch(k, pattern)]


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
