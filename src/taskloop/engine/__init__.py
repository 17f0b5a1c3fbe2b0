"""Iteration-control engine.

Each iteration launches the external agent with a fresh context. Everything the
next iteration needs to know lives on disk in the feature workspace:

- ``spec.md``: human-authored Specification, parsed into task blocks.
- ``tasks.json``: TaskSet derived from the Specification; completion flags.
- ``progress.txt``: append-only ProgressLog read back into every prompt.

The controller never trusts agent memory. It snapshots the completion vector
before invoking the agent, reloads it afterwards, and lets the circuit breaker,
rate limiter and exit detector decide whether another iteration is worth running.
"""
