"""devloop - autonomous coding-agent task orchestration.

Claims tasks from a shared store, runs each one through an isolated git
worktree, a multi-turn agent conversation and a set of quality gates, and
drives the whole thing from a development-loop controller.
"""

__version__ = "0.1.0"
