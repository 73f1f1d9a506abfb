from caseflow.core.approvals.resolver import ApprovalContext, ApprovalResolver

__all__ = ['ApprovalContext', 'ApprovalResolver']
