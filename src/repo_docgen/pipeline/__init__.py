"""Job dispatch pipeline: intake, outbound relay, message bus and worker dispatcher.

Flow
~~~~
An accepted trigger is stored as a ``jobs`` row plus a ``relay_entries`` row
in one SQLite transaction, so a crash after intake never loses work. The
relay publisher delivers each entry to the SQLite message bus at least once;
entries whose publish failed are retried by the interval sweeper up to a
fixed bound, after which they are left for an operator. Workers lease bus
messages, claim the job with a compare-and-set status update, run the
routine for its type and settle the message with ack, nack or dead-letter.

Every status transition is a conditional ``UPDATE ... WHERE status = ?`` plus
a ``job_events`` audit row, so duplicate deliveries and racing workers
resolve to a no-op instead of a second result.
"""
