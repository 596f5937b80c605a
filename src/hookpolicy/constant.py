from __future__ import annotations

import importlib.metadata

NAME = importlib.metadata.metadata("hookpolicy")["Name"]
VERSION = importlib.metadata.version("hookpolicy")
