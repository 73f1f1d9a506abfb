"""
Import helpers for locating a user's Caseflow app.

Locators name either a dotted module or a ``.py`` file, optionally followed
by ``:attribute``. The caller controls sys.path; the only convenience is
adding the working directory when it is a project root.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import os
import sys
from typing import Any

from caseflow.core.logging import get_logger

logger = get_logger('imports')

_PROJECT_MARKERS = ('pyproject.toml', 'setup.cfg', 'setup.py')


def setup_sys_path_from_cwd() -> str | None:
    """
    Add the working directory to sys.path when it holds a project marker.

    Parent directories are not searched, so a monorepo root never shadows
    the service being run. Returns the directory added, if any.
    """
    cwd = os.getcwd()
    has_marker = any(os.path.exists(os.path.join(cwd, m)) for m in _PROJECT_MARKERS)
    if has_marker and cwd not in sys.path:
        sys.path.insert(0, cwd)
        logger.debug(f'Added cwd to sys.path: {cwd}')
        return cwd
    return None


def _synthetic_module_name(path: str) -> str:
    digest = hashlib.sha256(os.path.realpath(path).encode()).hexdigest()[:12]
    return f'caseflow._dynamic.{digest}'


def import_file_path(file_path: str) -> Any:
    """Import a standalone file under a stable synthetic module name."""
    file_path = os.path.realpath(file_path)
    if not os.path.exists(file_path):
        raise FileNotFoundError(f'Module file not found: {file_path}')

    for mod in list(sys.modules.values()):
        mod_file = getattr(mod, '__file__', None)
        if mod_file and os.path.realpath(mod_file) == file_path:
            return mod

    parent_dir = os.path.dirname(file_path)
    if parent_dir not in sys.path:
        sys.path.insert(0, parent_dir)

    module_name = _synthetic_module_name(file_path)
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {file_path}')
    mod = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = mod
    spec.loader.exec_module(mod)
    return mod


def import_by_path(path: str) -> Any:
    """Import a ``.py`` file path or a dotted module path."""
    if path.endswith('.py') or os.path.sep in path:
        return import_file_path(path)
    return importlib.import_module(path)


def split_locator(locator: str) -> tuple[str, str | None]:
    """'pkg.mod:app' -> ('pkg.mod', 'app'); a Windows drive colon is not a separator."""
    head, sep, tail = locator.rpartition(':')
    if not sep or not head or os.path.sep in tail or tail.endswith('.py'):
        return locator, None
    return head, tail or None
