from .base import BackendDriver, Handle, MigrationBundle, RunningInfo
from .container import ContainerDriver
from .local import LocalDriver


def drivers_from_settings() -> dict:
    """One driver per environment name."""
    return {
        LocalDriver.name: LocalDriver.from_settings(),
        ContainerDriver.name: ContainerDriver.from_settings(),
    }


__all__ = [
    'BackendDriver',
    'ContainerDriver',
    'Handle',
    'LocalDriver',
    'MigrationBundle',
    'RunningInfo',
    'drivers_from_settings',
]
