"""Background worker that turns steering sessions into finished songs."""

__version__ = "0.1.0"
