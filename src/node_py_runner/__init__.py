from .config import NodeConfig
from .diagnostics import DiagnosticsOptions
from .environment import EnvironmentSource, merge_environment, parse_env_file
from .errors import AssemblyError, NodeRunnerError, ScriptExecutionError
from .execution.supervisor import ScriptSupervisor
from .files import Attachment, InputFile
from .parsing import ParseOptions, parse_output
from .router import NodeOutput, ResultItem
from .runner import run_python, run_python_sync

__all__ = [
    "AssemblyError",
    "Attachment",
    "DiagnosticsOptions",
    "EnvironmentSource",
    "InputFile",
    "NodeConfig",
    "NodeOutput",
    "NodeRunnerError",
    "ParseOptions",
    "ResultItem",
    "ScriptExecutionError",
    "ScriptSupervisor",
    "merge_environment",
    "parse_env_file",
    "parse_output",
    "run_python",
    "run_python_sync",
]
