"""buildrunner: a small declarative build-pipeline executor."""

__version__ = "0.1.0"
