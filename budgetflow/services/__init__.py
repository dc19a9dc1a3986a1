# Lazy imports to avoid dependency chains at startup
def __getattr__(name):
    if name == "AccountingWorkflowService":
        from budgetflow.services.accounting_workflow import AccountingWorkflowService
        return AccountingWorkflowService
    elif name == "AuditTrailService":
        from budgetflow.services.audit_trail import AuditTrailService
        return AuditTrailService
    elif name == "reconcile_po":
        from budgetflow.services.reconciliation import reconcile_po
        return reconcile_po
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
