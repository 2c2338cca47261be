"""autodeploy - Continuous-deployment supervisor.

Polls a remote branch, mirrors the commit into a local workspace, builds it and
keeps exactly one instance of the resulting program running.
"""

__version__ = "0.1.0"
