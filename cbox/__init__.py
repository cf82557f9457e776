"""cbox - per-branch Docker sandboxes for Claude Code.

Each git branch gets its own worktree, container, network and helper
processes. On top of the sandboxes sits a task workflow that moves a unit
of work through fixed phases (new, shaping, ready, implementation,
verification, done) and drives the issue tracker and pull requests.
"""

__version__ = "0.1.0"
