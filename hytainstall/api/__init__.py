# hytainstall/api/__init__.py
"""
Auto-import submodules so that
    from hytainstall.api import updates
works even when they haven't been imported elsewhere.
"""

from importlib import import_module as _import

for _name in ("updates",):
    _import(f"{__name__}.{_name}")

del _import, _name
