"""Durable job queue, scheduler and per-work-directory locking.

The queue polls a SQLite table instead of holding an in-memory ready list so
that pending work survives restarts. Exclusive access to a work directory is
tracked in process memory only; rows left in ``processing`` after a crash are
returned to ``pending`` on the next start.
"""
