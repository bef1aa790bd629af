"""
ingestion/rpc package

Resilient ledger read layer: endpoint pool, retry with failover, caching,
Multicall2 batching and record pagination.
"""
from .abi import MethodDescriptor
from .batcher import BatchCall, BatchReader, BatchResult
from .cache import RpcCache
from .client import LedgerClient
from .errors import (
    ClassifiedError,
    DomainError,
    EndpointsExhausted,
    ErrorKind,
    NetworkError,
    PoolEmptyError,
    Reverted,
    SubmissionFailed,
    TimedOut,
    UserCancelled,
)
from .monitor import PoolHealthMonitor
from .paginator import ContractRecordSource, RecordPaginator, RecordSource
from .pool import Endpoint, EndpointPool
from .retry import RetryExecutor
from .transport import JsonRpcTransport, Transport

__all__ = [
    'MethodDescriptor',
    'BatchCall',
    'BatchReader',
    'BatchResult',
    'RpcCache',
    'LedgerClient',
    'ClassifiedError',
    'DomainError',
    'EndpointsExhausted',
    'ErrorKind',
    'NetworkError',
    'PoolEmptyError',
    'Reverted',
    'SubmissionFailed',
    'TimedOut',
    'UserCancelled',
    'PoolHealthMonitor',
    'ContractRecordSource',
    'RecordPaginator',
    'RecordSource',
    'Endpoint',
    'EndpointPool',
    'RetryExecutor',
    'JsonRpcTransport',
    'Transport',
]
