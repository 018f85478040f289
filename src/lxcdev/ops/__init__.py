"""Wrappers over the external tools lxcdev drives.

- git plumbing used by the transfer stream (git_ops.py)
- the ``lxc`` client (lxc_ops.py)
- the JSONL event log (telemetry.py)

Like the rest of the in-container code, these use only the standard library.
"""
