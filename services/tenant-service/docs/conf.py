"""Sphinx configuration for the Tenant Service documentation."""

from __future__ import annotations

import os
import sys
from datetime import datetime

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
LIBS_DIR = os.path.abspath(os.path.join(ROOT_DIR, "..", "..", "libs", "python"))
sys.path.insert(0, ROOT_DIR)
sys.path.insert(0, LIBS_DIR)


project = "Tenant Service"
author = "Platform Team"
copyright = f"{datetime.now():%Y}, {author}"
release = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx_autodoc_typehints",
]

autodoc_typehints = "description"
autodoc_member_order = "bysource"
autodoc_mock_imports = ["psycopg", "psycopg_pool", "redis"]
napoleon_google_docstring = True
napoleon_numpy_docstring = False

exclude_patterns: list[str] = ["_build"]

html_theme = "alabaster"
