"""Shared default constants for the caseflow library."""

# Delimiter between a record name and its numeric qualifier ("Nightly - 3").
# Must be unlikely to appear in a job or schedule name.
QUALIFICATION_DELIMITER: str = ' - '

# Bounded attempts when negotiating a unique record name.
MAX_RESULT_RETRY: int = 20

# Every Nth naming attempt sleeps for a random interval to desynchronize
# competing writers.
RESULT_RETRY_BACKOFF_EVERY: int = 4
RESULT_RETRY_BACKOFF_MIN_MS: int = 100
RESULT_RETRY_BACKOFF_MAX_MS: int = 5_000

# How many recent records are scanned to find the next free qualifier.
QUALIFIER_SCAN_LIMIT: int = 10

# Launcher recorded when the caller does not supply one.
DEFAULT_LAUNCHER: str = 'System'

# Condition name raised when a case runs out of steps.
CATCH_COMPLETE: str = 'complete'

# Case variable holding the id of the record a case reports into.
VAR_RECORD_ID: str = 'recordId'

# Case variable holding the launcher identity.
VAR_LAUNCHER: str = 'launcher'

# Case variable set when the case is terminated.
VAR_TERMINATED: str = 'terminated'

# Case variable set to the last approval decision state.
VAR_LAST_APPROVAL_STATE: str = 'lastApprovalState'

# Case variable set to True when the last approval reached consensus.
VAR_APPROVED: str = 'approved'

# Repository lock timeout used while updating job run statistics.
DEFINITION_LOCK_TIMEOUT_S: float = 10.0

# Repository lock timeout while a case tree is being advanced.
CASE_LOCK_TIMEOUT_S: float = 30.0

# Repository lock timeout while a record or its partitions are updated.
RECORD_LOCK_TIMEOUT_S: float = 10.0
