"""Services package."""

from vidscribe.services.credit_ledger import CreditLedger, ledger
from vidscribe.services.transcription import cancel_transcription_job, process_transcription_job

__all__ = ["CreditLedger", "ledger", "cancel_transcription_job", "process_transcription_job"]
