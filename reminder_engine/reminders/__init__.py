"""Reminder delivery engine (scanner, dispatcher, scheduler, Celery tasks).

Reminders are authored elsewhere; this package finds the ones that are due,
checks the owner's plan, delivers them over the messaging gateway and moves
recurring reminders to their next occurrence.
"""
