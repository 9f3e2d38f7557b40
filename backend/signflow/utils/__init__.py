from signflow.utils.email_validation import normalize_signer_email

__all__ = ["normalize_signer_email"]
