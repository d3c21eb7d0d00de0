"""Job lifecycle: queue access, checkouts, processing and result reporting.

A producer creates ``jobs:<token>:*`` keys and pushes the token onto the
``generate`` list. The dispatcher pops it, a processor runs the requested
pipeline against a fresh checkout of the pull request, and the notifier
writes the terminal status and pushes the token onto ``results``. Pops are
destructive and unacknowledged: a worker that dies mid-job loses the token.
"""
