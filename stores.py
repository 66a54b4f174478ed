"""Storage layer for PaperTrail.

Each store owns one entity type and talks to the database only through the
session it was built with. Handlers never touch ``db.session`` directly; they
ask ``get_storage()`` for a :class:`Storage` and go through its stores, so the
backing store can be swapped by installing a different factory under
``app.extensions["storage_factory"]``.
"""
from flask import current_app, g

from models import db, User, Document, Permission, AuditLogEntry, RevokedToken, utcnow


class UserStore:
    def __init__(self, session):
        self.session = session

    def get(self, user_id):
        return self.session.get(User, user_id)

    def find_by_email(self, email):
        return self.session.query(User).filter_by(email=email).first()

    def create(self, **fields):
        user = User(**fields)
        self.session.add(user)
        self.session.flush()
        return user


class DocumentStore:
    def __init__(self, session):
        self.session = session

    def get(self, document_id):
        return self.session.query(Document).filter_by(id=document_id).first()

    def get_owned(self, document_id, owner_id):
        """Owner-scoped lookup: a document owned by someone else is reported as missing."""
        doc = self.get(document_id)
        if doc is None or doc.owner_id != owner_id:
            return None
        return doc

    def create(self, **fields):
        doc = Document(**fields)
        self.session.add(doc)
        self.session.flush()
        return doc

    def list_by_owner(self, owner_id):
        return (
            self.session.query(Document)
            .filter_by(owner_id=owner_id)
            .order_by(Document.created_at.desc(), Document.seq.desc())
            .all()
        )


class PermissionStore:
    def __init__(self, session):
        self.session = session

    def get(self, permission_id):
        return self.session.get(Permission, permission_id)

    def find_by_access_token(self, access_token):
        return self.session.query(Permission).filter_by(access_token=access_token).first()

    def create(self, **fields):
        perm = Permission(**fields)
        self.session.add(perm)
        self.session.flush()
        return perm

    def list_by_document(self, document_id, active_only=False):
        query = self.session.query(Permission).filter_by(document_id=document_id)
        if active_only:
            query = query.filter_by(is_active=True)
        return query.order_by(Permission.created_at).all()

    def list_expired(self, now=None, document_id=None):
        """Grants still marked active whose expiry has passed."""
        query = self.session.query(Permission).filter(
            Permission.is_active.is_(True),
            Permission.expires_at.isnot(None),
            Permission.expires_at <= (now or utcnow()),
        )
        if document_id is not None:
            query = query.filter(Permission.document_id == document_id)
        return query.all()

    def deactivate(self, perm):
        perm.is_active = False
        self.session.flush()
        return perm


class AuditLog:
    """Append-only: entries are never updated or removed."""

    def __init__(self, session):
        self.session = session

    def append(self, document_id, action, user_id=None, ip_address=None, user_agent=None,
               accessed_by_email=None, accessed_by_name=None, metadata=None):
        entry = AuditLogEntry(
            document_id=document_id,
            action=action,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            accessed_by_email=accessed_by_email,
            accessed_by_name=accessed_by_name,
            extra=dict(metadata or {}),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_by_document(self, document_id):
        return (
            self.session.query(AuditLogEntry)
            .filter_by(document_id=document_id)
            .order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.seq.desc())
            .all()
        )


class TokenStore:
    def __init__(self, session):
        self.session = session

    def revoke(self, jti, expires_at=None):
        if self.session.get(RevokedToken, jti) is None:
            self.session.add(RevokedToken(jti=jti, expires_at=expires_at))
            self.session.flush()

    def is_revoked(self, jti):
        return self.session.get(RevokedToken, jti) is not None

    def prune_expired(self, now=None):
        """Drop revocations for tokens that would be rejected as expired anyway."""
        removed = (
            self.session.query(RevokedToken)
            .filter(RevokedToken.expires_at.isnot(None), RevokedToken.expires_at <= (now or utcnow()))
            .delete(synchronize_session=False)
        )
        self.session.flush()
        return removed


class Storage:
    def __init__(self, session):
        self.session = session
        self.users = UserStore(session)
        self.documents = DocumentStore(session)
        self.permissions = PermissionStore(session)
        self.audit = AuditLog(session)
        self.tokens = TokenStore(session)

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()


def sqlalchemy_storage():
    return Storage(db.session)


def get_storage():
    """Storage for the current request, built once from the app's factory."""
    if "storage" not in g:
        factory = current_app.extensions.get("storage_factory", sqlalchemy_storage)
        g.storage = factory()
    return g.storage
