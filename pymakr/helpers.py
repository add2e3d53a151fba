import importlib.resources as importlib_resources
from functools import lru_cache
from pathlib import Path

from . import devtools, snippets


@lru_cache
def read_snippet(name):
    resource = f"{name}.py"
    return importlib_resources.files(snippets).joinpath(resource).read_text(encoding="utf-8")


@lru_cache
def read_devtools_template(name):
    return importlib_resources.files(devtools).joinpath(name).read_text(encoding="utf-8")


def devtools_payload_path() -> Path:
    """Local folder holding the files uploaded to ``_pymakr_dev`` on-device."""
    return Path(str(importlib_resources.files(devtools).joinpath("payload")))
