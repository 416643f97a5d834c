"""
Service layer.

Modules here are wired together explicitly by ``groupfleet.main`` (one gateway,
one publisher, one scheduler per process); nothing in this package holds
global state.
"""
