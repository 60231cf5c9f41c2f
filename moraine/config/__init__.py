"""
Configuration for Moraine: engine settings and YAML declaration files.
"""

from moraine.config.settings import MoraineSettings
from moraine.config.loader import DeclarationFile, load_document, load_stack

__all__ = [
    "MoraineSettings",
    "DeclarationFile",
    "load_document",
    "load_stack",
]
