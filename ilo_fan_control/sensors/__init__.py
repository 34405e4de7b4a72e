"""
Telemetry sources for the iLO controller
"""

from .base_source import BaseSource
from .redfish_source import RedfishSource
from .sensor_reader import SensorReader
from .ssh_source import SSHSource

__all__ = ['BaseSource', 'RedfishSource', 'SSHSource', 'SensorReader']
