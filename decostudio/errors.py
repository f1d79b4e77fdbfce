"""Domain error taxonomy.

Collaborator clients raise their own low-level errors; those are translated
into one of these before they reach the API layer, which renders them as
``{"error": {"code", "message", "details"}}`` with the error's status code.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    code = 'DOMAIN_ERROR'
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            'code': self.code,
            'message': self.message,
            'details': self.details,
        }


class ValidationError(DomainError):
    code = 'VALIDATION_ERROR'
    status_code = 400


class UnauthorizedError(DomainError):
    code = 'UNAUTHORIZED'
    status_code = 401

    def __init__(self, message: str = 'Not authenticated') -> None:
        super().__init__(message)


class ForbiddenError(DomainError):
    code = 'FORBIDDEN'
    status_code = 403


class StyleNotFound(DomainError):
    code = 'STYLE_NOT_FOUND'
    status_code = 404

    def __init__(self, style_slug: str) -> None:
        super().__init__(f'Unknown style: {style_slug}', {'style': style_slug})
        self.style_slug = style_slug


class RoomNotFound(DomainError):
    code = 'ROOM_NOT_FOUND'
    status_code = 404

    def __init__(self, room_type: str) -> None:
        super().__init__(f'Unknown room type: {room_type}', {'room': room_type})
        self.room_type = room_type


class GenerationNotFound(DomainError):
    code = 'GENERATION_NOT_FOUND'
    status_code = 404

    def __init__(self, generation_id: str) -> None:
        super().__init__(f'Generation not found: {generation_id}', {'generationId': generation_id})
        self.generation_id = generation_id


class UserNotFound(DomainError):
    code = 'USER_NOT_FOUND'
    status_code = 404

    def __init__(self, user_id: str) -> None:
        super().__init__(f'User not found: {user_id}', {'userId': user_id})
        self.user_id = user_id


class GenerationNotReady(DomainError):
    code = 'GENERATION_NOT_READY'
    status_code = 409


class InsufficientCreditsError(DomainError):
    code = 'INSUFFICIENT_CREDITS'
    status_code = 402

    def __init__(self, current: int, required: int) -> None:
        super().__init__(
            f'Insufficient credits: {current} available, {required} required',
            {'current': current, 'required': required},
        )
        self.current = current
        self.required = required


class ProviderSubmissionFailure(DomainError):
    code = 'PROVIDER_SUBMISSION_FAILED'
    status_code = 502


class ProviderTimeout(DomainError):
    code = 'PROVIDER_TIMEOUT'
    status_code = 504

    def __init__(self, generation_id: str, attempts: int) -> None:
        super().__init__(
            f'Generation {generation_id} still running after {attempts} status checks',
            {'generationId': generation_id, 'attempts': attempts},
        )
        self.generation_id = generation_id
        self.attempts = attempts


class PaymentVerificationFailure(DomainError):
    code = 'PAYMENT_VERIFICATION_FAILED'
    status_code = 400


class PaymentError(DomainError):
    code = 'PAYMENT_ERROR'
    status_code = 400
