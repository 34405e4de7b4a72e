"""
Base class for telemetry sources
Defines the interface every iLO reading path implements
"""

from abc import ABC, abstractmethod
from typing import Dict

from ..models import IloConfig, SensorSnapshot, Temperatures


class BaseSource(ABC):
    """
    Abstract telemetry source

    A source performs one full read over its channel and either returns a
    snapshot or raises. Fallback between sources is the SensorReader's job.
    """

    name = "base"

    @abstractmethod
    def read(self, config: IloConfig) -> SensorSnapshot:
        """
        Reads fans and temperatures

        Args:
            config: Controller host and credentials

        Returns:
            Snapshot tagged with this source's name
        """

    def _snapshot(self, fans: Dict[str, float], temps: Dict[str, float], other: Dict[str, float]) -> SensorSnapshot:
        return SensorSnapshot(
            fans=fans,
            temps=Temperatures(**temps),
            other=other,
            source=self.name,
        )
