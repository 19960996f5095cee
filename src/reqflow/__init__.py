from .config import OrchestratorConfig as OrchestratorConfig
from .config import RequestOptions as RequestOptions
from .config import config_from_env as config_from_env
from .exceptions import AttemptRecord as AttemptRecord
from .exceptions import BatchItemError as BatchItemError
from .exceptions import ClientError as ClientError
from .exceptions import ConfigurationError as ConfigurationError
from .exceptions import MalformedResponseError as MalformedResponseError
from .exceptions import NetworkError as NetworkError
from .exceptions import ProtocolMismatchError as ProtocolMismatchError
from .exceptions import QueueTimeoutError as QueueTimeoutError
from .exceptions import RateLimitError as RateLimitError
from .exceptions import ReqflowError as ReqflowError
from .exceptions import RequestCancelledError as RequestCancelledError
from .exceptions import ServerError as ServerError
from .exceptions import StorageQuotaError as StorageQuotaError
from .interceptors import BearerTokenInterceptor as BearerTokenInterceptor
from .interceptors import CsrfTokenInterceptor as CsrfTokenInterceptor
from .interceptors import HeaderInterceptor as HeaderInterceptor
from .interceptors import Interceptor as Interceptor
from .interceptors import LoggingInterceptor as LoggingInterceptor
from .interceptors import UnwrapInterceptor as UnwrapInterceptor
from .orchestrator import Outcome as Outcome
from .orchestrator import OutcomeSource as OutcomeSource
from .orchestrator import RequestOrchestrator as RequestOrchestrator
from .request import Priority as Priority
from .request import RequestDescriptor as RequestDescriptor
from .request import Verb as Verb
from .storage import SqliteStorage as SqliteStorage
from .transport import HttpxTransport as HttpxTransport
from .transport import TransportResponse as TransportResponse

__all__ = [
    "RequestOrchestrator",
    "OrchestratorConfig",
    "RequestOptions",
    "config_from_env",
    "RequestDescriptor",
    "Priority",
    "Verb",
    "Outcome",
    "OutcomeSource",
    "Interceptor",
    "HeaderInterceptor",
    "BearerTokenInterceptor",
    "CsrfTokenInterceptor",
    "LoggingInterceptor",
    "UnwrapInterceptor",
    "HttpxTransport",
    "TransportResponse",
    "SqliteStorage",
    "AttemptRecord",
    "ReqflowError",
    "ConfigurationError",
    "NetworkError",
    "ServerError",
    "ClientError",
    "RateLimitError",
    "MalformedResponseError",
    "ProtocolMismatchError",
    "BatchItemError",
    "QueueTimeoutError",
    "StorageQuotaError",
    "RequestCancelledError",
]
