from fastapi import HTTPException


def ledger_error(status_code: int, code: str, message: str) -> HTTPException:
    """
    Build a rejection carrying a stable machine code plus a human explanation.
    The UI shows `message`; callers branch on `code`.
    """
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def invalid(code: str, message: str) -> HTTPException:
    return ledger_error(400, code, message)


def not_found(code: str, message: str) -> HTTPException:
    return ledger_error(404, code, message)


def conflict(code: str, message: str) -> HTTPException:
    return ledger_error(409, code, message)
