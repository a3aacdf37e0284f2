"""Pod restarter.

Single-namespace controller that watches the replicas of a StatefulSet
and/or a label selector and recycles any replica that turns unhealthy:
 - status check (phase, readiness, container state)
 - optional HTTP, TCP and exec checks, run in that order
 - unhealthy replicas are deleted so the owning controller recreates them

Entry point: `cli.py run`.
"""
