"""Loop Medic - self-healing supervisor for automated task loops."""

__version__ = "0.1.0"
