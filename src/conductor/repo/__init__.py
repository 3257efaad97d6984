from conductor.repo.git import GitError, GitRepository, relative_commit_paths
from conductor.repo.guard import GitOperationGuard

__all__ = ["GitError", "GitOperationGuard", "GitRepository", "relative_commit_paths"]
