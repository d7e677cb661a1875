"""DAMP orchestration core.

Provisions and supervises the local container development environment:
services, per-project sandboxes, the edge reverse proxy and the engine
event stream that keeps observers in sync.
"""

__version__ = "0.1.0"
