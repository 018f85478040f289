"""lxcdev - developer workflows over lxc containers, git, quilt and Jenkins."""

__version__ = "1.0.0"
