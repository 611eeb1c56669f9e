from __future__ import annotations


class SignatureError(ValueError):
    status_code = 400


class SignatureValidationError(SignatureError):
    pass


class LinkNotFoundError(SignatureError):
    status_code = 404

    def __init__(self, message: str = "Enlace de firma no encontrado") -> None:
        super().__init__(message)


class LinkExpiredError(SignatureError):
    status_code = 410

    def __init__(self, message: str = "Este enlace ha expirado") -> None:
        super().__init__(message)


class LinkRevokedError(SignatureError):
    status_code = 410

    def __init__(self, message: str = "Este enlace fue revocado") -> None:
        super().__init__(message)


class LinkAlreadyCompletedError(SignatureError):
    status_code = 409

    def __init__(self, message: str = "La firma de este enlace ya fue completada") -> None:
        super().__init__(message)


class IdentityVerificationRequiredError(SignatureError):
    status_code = 403

    def __init__(self, message: str = "Se requiere verificar la identidad antes de firmar") -> None:
        super().__init__(message)


class OtpDeliveryError(SignatureError):
    status_code = 502


class EvidenceIntegrityError(SignatureError):
    # fatal for the affected bundle: never repaired automatically
    status_code = 409


class TransitionDeniedError(ValueError):
    status_code = 422

    def __init__(self, reasons: list[str]) -> None:
        super().__init__("; ".join(reasons) or "Transicion denegada")
        self.reasons = reasons


class TransitionConflictError(ValueError):
    status_code = 409

    def __init__(self, message: str = "La venta cambio de estado mientras se procesaba la transicion") -> None:
        super().__init__(message)


class SaleNotFoundError(ValueError):
    status_code = 404

    def __init__(self, message: str = "Venta no encontrada") -> None:
        super().__init__(message)
