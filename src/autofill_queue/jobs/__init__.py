"""Durable job queue for automated insurance form submission.

The database is the only coordination point between workers: a job is owned
by whichever worker wins the conditional ``pending -> processing`` update,
and every later transition is written by that owner alone. There is no
heartbeat or lease, so a worker that dies mid-attempt leaves its job in
processing until the crash recovery sweep returns it to pending after the
staleness threshold.
"""
