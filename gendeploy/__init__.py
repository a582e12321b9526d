"""gendeploy - push, activate, verify and roll back declarative host configs."""

__version__ = "0.1.0"
