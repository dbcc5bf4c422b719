from taskherd.workspace.manager import WorkspaceBinding, WorkspaceError, WorkspaceManager
from taskherd.workspace.repo import GitError, GitRepo

__all__ = ["GitError", "GitRepo", "WorkspaceBinding", "WorkspaceError", "WorkspaceManager"]
