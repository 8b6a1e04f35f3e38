"""Engine assembly: container, factory and shutdown coordination."""

from pushrelay.app.container import Container
from pushrelay.app.factory import create_engine
from pushrelay.app.shutdown import ShutdownCoordinator

__all__ = ["Container", "ShutdownCoordinator", "create_engine"]
