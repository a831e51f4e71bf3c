# src/lock/__init__.py - v1
