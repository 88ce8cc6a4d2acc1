from stepstack.core.process.run_process import (
    ProcessResult,
    ProcessTimeout,
    build_env,
    run_process,
)

__all__ = ["ProcessResult", "ProcessTimeout", "build_env", "run_process"]
