"""
Entry point scripts for procwarden's background processes.

These scripts are run with `python -m` and stay minimal to avoid circular
dependencies between the console and the supervisor.
"""
