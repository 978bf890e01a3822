from maintenance.retention import RetentionSweeper, SweepReport

__all__ = ["RetentionSweeper", "SweepReport"]
