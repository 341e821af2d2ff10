"""Container job runner.

Submodules:
  protocol     — output protocol codec (wrap commands, parse result + captured files from logs)
  _names       — DNS-1123 job and resource names
  _backend     — JobBackend protocol and the Submission model
  _docker      — local Docker engine backend (docker CLI)
  _kubernetes  — Kubernetes Jobs backend (official client)
  runner       — JobRunner: run / run_job / start_service / stop_service
"""

from drydock.runtime._backend import JobBackend, Submission
from drydock.runtime.runner import JobRunner, create_backend

__all__ = ["JobBackend", "JobRunner", "Submission", "create_backend"]
