class HarmonizationError(RuntimeError):
    """Base class for every failure that aborts a harmonization run."""


class InputError(HarmonizationError):
    """Scene, matches, regions or images are missing or unreadable."""


class ConfigError(HarmonizationError, ValueError):
    """Invalid option value, rejected before any processing phase runs."""


class UnsupportedSelectionMethod(ConfigError):
    pass


class GraphEmptyError(HarmonizationError):
    """No connected component survived match-support filtering."""


class LPSolveFailure(HarmonizationError):
    def __init__(self, channel: str, reason: str = ""):
        self.channel = channel
        msg = f"LP solve failed for the {channel} channel"
        super().__init__(f"{msg}: {reason}" if reason else msg)
