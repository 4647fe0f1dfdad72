"""SVN to GitLab migration and incremental sync backend."""

__version__ = "1.0.0"
