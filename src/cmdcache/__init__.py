"""cmdcache - run a command once, replay its output afterwards."""

__version__ = "0.1.0"
