class ShipyardError(Exception):
    """Base class for every error raised by shipyard."""


class DescriptorError(ShipyardError):
    """The orchestration descriptor is missing or invalid."""


class BuildError(ShipyardError):
    pass


class PushError(ShipyardError):
    pass


class DeployError(ShipyardError):
    """A rollout step failed. `step` names the step that stopped the rollout."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step


class PipelineGateError(ShipyardError):
    """The deploy stage was requested outside the conditions that allow it."""


class InvalidTransition(ShipyardError):
    pass
