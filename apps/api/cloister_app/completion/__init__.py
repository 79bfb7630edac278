from .background import BackgroundCompletion, FileResultSink, JobResultSink, ResultSink
from .chat import CompletionResult, CompletionSource, ask, complete
from .jobs import create_completion_job, execute_completion_job, get_completion_job

__all__ = [
    "BackgroundCompletion",
    "CompletionResult",
    "CompletionSource",
    "FileResultSink",
    "JobResultSink",
    "ResultSink",
    "ask",
    "complete",
    "create_completion_job",
    "execute_completion_job",
    "get_completion_job",
]
