# src/cache/stores/__init__.py - v1
