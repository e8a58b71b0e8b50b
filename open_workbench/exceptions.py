class WorkbenchError(Exception):
    """Base class for errors raised by the workbench core."""


class LaunchError(WorkbenchError):
    """The process could not be started; nothing was registered."""

    def __init__(self, message: str, working_directory: str | None = None):
        super().__init__(message)
        self.working_directory = working_directory


class ProjectNotFound(WorkbenchError):
    def __init__(self, project: str):
        super().__init__(f"Project not found: {project}")
        self.project = project


class PathOutsideProject(WorkbenchError):
    def __init__(self, project: str, path: str):
        super().__init__(f"Path escapes project {project!r}: {path}")
        self.project = project
        self.path = path
