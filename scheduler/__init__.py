from scheduler.lesson_scheduler import CourseScheduler, TickResult, lead_time_text

__all__ = ["CourseScheduler", "TickResult", "lead_time_text"]
