"""Backend dispatch core: run executor, error classifier, availability tracker.

Why not a job queue?
~~~~~~~~~~~~~~~~~~~~
Runs are single attempts started by an interactive host, not durable jobs.
What the host needs from this package is the boundary with the backends
themselves:

- Subprocess and streaming-HTTP execution behind one run lifecycle, with
  timeouts, explicit stops and incremental output delivery.
- Classification of failure output (rate limits, usage limits, auth,
  missing models, network) into a small vocabulary the host can act on.
- Per-backend availability with recovery estimates, so a degraded backend
  is transparently replaced by a task, provider or system fallback.

Everything is persisted as flat JSON next to the run output; retries and
admission control stay with the caller.
"""
