"""
SIEM forwarding for Anchorpipe audit logs.
"""

from .adapter import (
    BaseSiemAdapter,
    ForwardOutcome,
    SiemForwardResult,
    SiemLogEntry,
    convert_audit_log_to_siem_entry,
    format_as_cef,
    format_as_leef,
    severity_for_action,
)
from .adapters import (
    ElasticsearchSiemAdapter,
    HttpSiemAdapter,
    SplunkSiemAdapter,
    SyslogSiemAdapter,
    create_siem_adapter,
)
from .forwarder import SiemForwarder, get_siem_forwarder, reset_siem_forwarder

__all__ = [
    "BaseSiemAdapter",
    "ForwardOutcome",
    "SiemForwardResult",
    "SiemLogEntry",
    "convert_audit_log_to_siem_entry",
    "format_as_cef",
    "format_as_leef",
    "severity_for_action",
    "ElasticsearchSiemAdapter",
    "HttpSiemAdapter",
    "SplunkSiemAdapter",
    "SyslogSiemAdapter",
    "create_siem_adapter",
    "SiemForwarder",
    "get_siem_forwarder",
    "reset_siem_forwarder",
]
