"""
Fresher error taxonomy.

Every fatal condition raised by the engine derives from FresherError so
the CLI can print one clean diagnostic and exit non-zero. Parse-local
problems (a malformed stream line, an unmatched plan line) never raise.
"""


class FresherError(Exception):
    """Base class for all fatal Fresher errors."""
    pass


class SetupError(FresherError):
    """A prerequisite is missing (no plan, no agent binary, no .fresher/)."""
    pass


class ConfigError(FresherError):
    """The config file exists but cannot be read or validated."""
    pass
