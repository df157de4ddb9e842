# vaultbox/policy.py

def evaluate_policy(request_record, contact_record, now):
    """
    Decide whether an access request currently grants emergency access.
    Checks the request reached approval, its window is still open, and the
    contact relationship it was granted under is still active.
    Returns (ok, reason); reason is an audit code, never shown to contacts.
    """
    if request_record is None:
        return False, "unknown_token"
    if request_record.status != "approved":
        return False, f"request_{request_record.status}"
    if request_record.expires_at is None or now > request_record.expires_at:
        return False, "access_window_closed"
    if contact_record is None or contact_record.status != "active":
        return False, "contact_not_active"
    return True, "ok"
