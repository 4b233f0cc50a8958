"""
Minimal setup.py for tools that predate PEP 517/518.

spanorm's metadata, dependencies and the ``spanorm`` console script are
declared in pyproject.toml.
"""

from setuptools import setup

setup()
