"""Job queue, routing, execution and self-healing for mission control.

Why not Celery / RQ / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~
The queue is one SQLite table shared by a scheduler, an HTTP trigger and
operator commands.  What matters is not message delivery but the job row
itself:

- Every status change is a compare-and-swap on the expected status, so
  concurrent runners never both claim, settle or retry the same job.
- Routing, review scoring and agent statistics read and write the same
  rows the queue does, inside the same transactions.
- Pause and concurrency switches live in a settings table that operators
  flip at runtime without restarting anything.

A broker would add an operational dependency for a single-machine tool
and would still need all of the above as custom logic around it.
"""
