"""treeflow - run agent workflows in isolated git worktrees."""

__version__ = "0.1.0"
