"""Project workspaces: one directory per project under a common root.

File endpoints and run requests only ever see paths that ``resolve_path``
has confined to the project's directory. Running commands and file edits
share that directory without any locking between them.
"""

import logging
import os
import re

from open_workbench.exceptions import PathOutsideProject, ProjectNotFound

logger = logging.getLogger(__name__)

_PROJECT_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ProjectResolver:
    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def _project_dir(self, project: str) -> str:
        if not _PROJECT_ID.match(project) or project in (".", ".."):
            raise ProjectNotFound(project)
        return os.path.join(self.root, project)

    def create(self, project: str) -> str:
        target = self._project_dir(project)
        os.makedirs(target, exist_ok=True)
        logger.info("Created project %s at %s", project, target)
        return target

    def list(self) -> list[str]:
        if not os.path.isdir(self.root):
            return []
        return sorted(
            name
            for name in os.listdir(self.root)
            if _PROJECT_ID.match(name) and os.path.isdir(os.path.join(self.root, name))
        )

    def resolve(self, project: str) -> str:
        target = self._project_dir(project)
        if not os.path.isdir(target):
            raise ProjectNotFound(project)
        return target

    def resolve_path(self, project: str, path: str = ".") -> str:
        """Map *path* (relative to the project) to an absolute path inside it."""
        base = self.resolve(project)
        target = os.path.realpath(os.path.join(base, path.lstrip("/") or "."))
        real_base = os.path.realpath(base)
        if os.path.commonpath([real_base, target]) != real_base:
            raise PathOutsideProject(project, path)
        return target
