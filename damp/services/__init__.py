"""Orchestration components: ports, containers, proxy, events and entity state."""
