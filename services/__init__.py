"""
Relay Controller Services

Layered service architecture:
1. Bus - Serialized Modbus RTU access, connection lifecycle, relay I/O
2. Schedule - Persistent time windows, evaluation, periodic reconciliation
3. API - HTTP surface for manual control and schedule management
4. Controller - Wires the layers together and owns startup/shutdown order
"""

__version__ = "1.0.0"
