"""Fleet Connection Orchestrator.

Validates connection control requests, drives the per-connection lifecycle,
onboards edge gateways, and dispatches commands to the fleet over MQTT.
"""

__version__ = "1.0.0"
