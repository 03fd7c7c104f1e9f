"""Switchboard: dispatch queue and loop accountability for agent fleets.

Queues commands for agents, tracks their execution lifecycle, retries
failures with exponential backoff, escalates exhausted lineages to a
coordinator agent, and rolls up inter-agent message loops into SLA metrics.
"""

__version__ = "0.1.0"
