"""setupwizard - multi-step, plugin-extensible application setup wizard."""

__version__ = "1.0.0"
