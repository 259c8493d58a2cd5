from .audit_ledger import AuditLedger, compute_entry_hash
from .custody_report import CustodyReportBuilder

__all__ = ["AuditLedger", "compute_entry_hash", "CustodyReportBuilder"]
