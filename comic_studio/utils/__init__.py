"""
Utilities Module
================

Project backup and asset export helpers.
"""

from .storage import export_project_zip, import_project_zip, save_data_url

__all__ = [
    "export_project_zip",
    "import_project_zip",
    "save_data_url",
]
