"""
schemas/auth_schema.py — Marshmallow schemas for authentication endpoints.

Validation responsibility:
  - This file: field types, lengths, formats.
  - services/auth_service.py: DUPLICATE_EMAIL (requires a DB lookup).

All schemas inherit from marshmallow.Schema directly so they can be used
in unit tests without an application context.
"""

from __future__ import annotations

from marshmallow import Schema, ValidationError, fields, validate, validates


class RegisterSchema(Schema):
    """
    POST /auth/register

    Field rules:
      email    : valid email format, max 255 chars
      password : 8 chars to 72 bytes, at least one letter and one digit
      name     : 1–100 chars after trim
    """

    email = fields.Email(
        required=True,
        validate=validate.Length(max=255),
    )

    password = fields.Str(required=True, load_only=True)

    name = fields.Str(
        required=True,
        validate=validate.Length(
            min=1,
            max=100,
            error="Name must be between 1 and 100 characters.",
        ),
    )

    @validates("password")
    def validate_password_strength(self, value: str, **kwargs) -> None:
        if len(value) < 8:
            raise ValidationError("Password must be at least 8 characters long.")
        if len(value.encode("utf-8")) > 72:
            raise ValidationError("Password must be at most 72 bytes long.")
        if not any(c.isalpha() for c in value):
            raise ValidationError("Password must contain at least one letter.")
        if not any(c.isdigit() for c in value):
            raise ValidationError("Password must contain at least one digit.")

    @validates("name")
    def validate_name_not_blank(self, value: str, **kwargs) -> None:
        if not value.strip():
            raise ValidationError("Name must not be blank or contain only whitespace.")


class LoginSchema(Schema):
    """
    POST /auth/login

    Credential correctness is checked in auth_service.py (INVALID_CREDENTIALS, 401).
    """

    email = fields.Str(required=True)
    password = fields.Str(required=True, load_only=True, validate=validate.Length(max=255))


class RefreshTokenSchema(Schema):
    """
    POST /auth/refresh

    The refresh token is opaque, so the owning user id travels with it.
    """

    user_id = fields.Int(required=True, strict=True)
    refresh_token = fields.Str(required=True, validate=validate.Length(min=1))
