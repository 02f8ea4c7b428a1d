"""
Provisioning pipeline: stages, readiness checks, run state and the runner.
"""
