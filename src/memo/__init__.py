# src/memo/__init__.py - v1
