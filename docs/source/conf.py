import os
import sys

# Put project root on sys.path so autodoc can import the package if needed
sys.path.insert(0, os.path.abspath("../.."))

project = "mapprior"
author = "mapprior developers"

extensions = [
    "autoapi.extension",
    "sphinx.ext.doctest",
    "sphinx.ext.napoleon",
    "sphinx.ext.mathjax",
]
templates_path = []
exclude_patterns = []

html_theme = "alabaster"
master_doc = "index"

# ---------------------------------------------------------------------------
# sphinx-autoapi: API reference for the `mapprior` package
# ---------------------------------------------------------------------------
autoapi_type = "python"
autoapi_dirs = ["../../mapprior"]
autoapi_ignore = [
    "**/tests/**",
    "**/__pycache__/**",
]

autodoc_typehints = "description"

autoapi_options = [
    "members",
    "undoc-members",
    "show-inheritance",
    "show-module-summary",
]

autoapi_python_class_content = "both"
