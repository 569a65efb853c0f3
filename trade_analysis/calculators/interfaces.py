"""
Interfaces for position reconstruction and PnL components.

Follows Dependency Inversion Principle (DIP):
High-level modules should not depend on low-level modules.
Both should depend on abstractions.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable


class IPositionTracker(ABC):
    """
    Interface for position reconstruction.

    Consumes a time-ordered execution stream for a single symbol.
    """

    @abstractmethod
    def process_executions(self, executions: Iterable[Any]) -> Any:
        """Replay executions and return the reconstructed positions."""
        pass


class IPnLCalculator(ABC):
    """
    Interface for per-position PnL figures.

    Follows Single Responsibility Principle (SRP):
    Only responsible for deriving metrics from one position.
    """

    @abstractmethod
    def calculate(self, position) -> Any:
        """Compute metrics for a single position."""
        pass


class IAggregator(ABC):
    """
    Interface for rolling positions up along one dimension.

    Follows Open/Closed Principle (OCP):
    Open for extension (new aggregation strategies),
    closed for modification.
    """

    @abstractmethod
    def add_position(self, position: Any) -> None:
        """Add a position to the aggregation."""
        pass

    @abstractmethod
    def get_results(self) -> Any:
        """Get the aggregated results."""
        pass
