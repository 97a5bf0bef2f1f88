"""
auth/credentials.py -- Credential Store: identity records and password checks.

Wraps an AuthStore with the password KDF and the domain error mapping:
None from the backend becomes NotFoundError, a failed guarded update becomes
EditConflictError, and every login failure becomes InvalidCredentialsError.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

import logging

from auth.errors import EditConflictError, InvalidCredentialsError, NotFoundError
from auth.models import Identity
from auth.store import AuthStore
from auth.tokens import burn_password_check, hash_password, verify_password

logger = logging.getLogger("keyway.auth")


class CredentialStore:
    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def create(self, identifier: str, raw_password: str) -> Identity:
        """Hash the password and insert a new identity.

        Raises DuplicateIdentifierError when the identifier is taken. The
        existing identity is left untouched.
        """
        identity = Identity(identifier=identifier, password_hash=hash_password(raw_password))
        identity = self.store.insert_identity(identity)
        logger.info("Identity %d created", identity.id)
        return identity

    def find_by_identifier(self, identifier: str) -> Identity:
        identity = self.store.get_identity_by_identifier(identifier)
        if identity is None:
            raise NotFoundError(identifier)
        return identity

    def find_by_id(self, identity_id: int) -> Identity:
        identity = self.store.get_identity_by_id(identity_id)
        if identity is None:
            raise NotFoundError(str(identity_id))
        return identity

    def verify_credentials(self, identifier: str, raw_password: str) -> Identity:
        """Authenticate an identifier/password pair with timing equalization.

        Always runs argon2 whether or not the identifier exists:
        - Unknown identifier: argon2 runs against the dummy hash (same cost)
        - Wrong password: argon2 runs against the real hash (same cost)

        Both failures raise the same InvalidCredentialsError.
        """
        identity = self.store.get_identity_by_identifier(identifier)
        if identity is None:
            # Equalize timing -- do NOT return early before running argon2
            burn_password_check(raw_password)
            raise InvalidCredentialsError()
        if not verify_password(raw_password, identity.password_hash):
            raise InvalidCredentialsError()
        return identity

    def update(self, identity: Identity) -> None:
        """Write identity's identifier and hash, guarded by the version it was read at.

        Raises EditConflictError if the row changed (or vanished) since it was
        read, DuplicateIdentifierError if the new identifier is taken.
        """
        if not self.store.update_identity(identity):
            raise EditConflictError(str(identity.id))

    def update_password(self, identity_id: int, raw_password: str) -> None:
        identity = self.find_by_id(identity_id)
        identity.password_hash = hash_password(raw_password)
        self.update(identity)
        logger.info("Password updated for identity %d", identity_id)

    def exists(self, identity_id: int) -> bool:
        return self.store.identity_exists(identity_id)

    def exists_with_identifier(self, identifier: str) -> bool:
        return self.store.identifier_exists(identifier)
