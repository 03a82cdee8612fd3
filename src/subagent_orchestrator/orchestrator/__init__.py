"""Sub-task orchestrator with a durable task store and file-based progress ledger.

Why SQLite for the task store and plain files for progress?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The store is mutated by the orchestrator, by status queries and by the cleanup
timer, sometimes from different processes. SQLite gives atomic commits and
``BEGIN IMMEDIATE`` serialization for free, and a conditional ``UPDATE`` is the
set-once session binding.

Workers, on the other hand, only know how to write a file. They get one JSON
record per sub-task in the progress directory; the orchestrator reads those
records and folds them into the store, and never writes them back.
"""
