# Stage backends
from foilview.backend.drivers.simulated import SimulatedStageBackend

__all__ = [
    "SimulatedStageBackend",
]
