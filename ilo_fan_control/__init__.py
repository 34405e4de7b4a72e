"""
iLO fan-control server
Telemetry, history and fan control for HPE iLO management controllers
"""

__version__ = "1.0.0"
