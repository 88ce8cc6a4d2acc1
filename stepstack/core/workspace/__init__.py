from stepstack.core.workspace.build_workspace import (
    SandboxImage,
    Workspace,
    WorkspaceBuilder,
    default_sandbox_image_name,
    default_workspace_path,
    load_workspace_config,
)

__all__ = [
    "SandboxImage",
    "Workspace",
    "WorkspaceBuilder",
    "default_sandbox_image_name",
    "default_workspace_path",
    "load_workspace_config",
]
