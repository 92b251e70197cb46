"""
Central constants for the ProcureTrain application.

The role -> permission table lives here as plain data so it can be audited
(and replaced at startup, see rbac.init_rbac) without touching call sites.
"""
from __future__ import annotations

from decimal import Decimal
from types import MappingProxyType

SUPER_ADMIN = "super_admin"
FINANCE_PERSON = "finance_person"
EVENT_MANAGER = "event_manager"
ORDINARY_USER = "ordinary_user"

ROLES = (SUPER_ADMIN, FINANCE_PERSON, EVENT_MANAGER, ORDINARY_USER)

# Roles that see the admin dashboard / full registration data.
ADMIN_ROLES = frozenset({SUPER_ADMIN, FINANCE_PERSON, EVENT_MANAGER})

PERMISSION_GROUPS = MappingProxyType(
    {
        "users": ("users.create", "users.read", "users.update", "users.delete", "users.assign_roles"),
        "events": (
            "events.create",
            "events.read",
            "events.update",
            "events.delete",
            "events.feature",
            "events.analytics",
        ),
        "registrations": (
            "registrations.read_all",
            "registrations.read_own",
            "registrations.create",
            "registrations.update",
            "registrations.delete",
            "registrations.approve",
            "registrations.cancel",
            "registrations.export",
        ),
        "finance": ("finance.read", "finance.update", "finance.export", "finance.reports"),
        "admin": ("admin.dashboard", "admin.analytics", "admin.reports", "admin.system_settings"),
        "newsletter": ("newsletter.read", "newsletter.create", "newsletter.send", "newsletter.export"),
    }
)

PERMISSIONS = frozenset(p for group in PERMISSION_GROUPS.values() for p in group)

ROLE_PERMISSIONS = MappingProxyType(
    {
        # Full access to everything
        SUPER_ADMIN: tuple(p for group in PERMISSION_GROUPS.values() for p in group),
        EVENT_MANAGER: (
            "events.create",
            "events.read",
            "events.update",
            "events.delete",
            "events.feature",
            "events.analytics",
            "registrations.read_all",
            "registrations.read_own",
            "registrations.create",
            "registrations.approve",
            "registrations.cancel",
            "registrations.export",
            "admin.dashboard",
            "admin.analytics",
            "newsletter.read",
            "newsletter.create",
        ),
        FINANCE_PERSON: (
            "events.read",  # view only
            "registrations.read_all",
            "registrations.read_own",
            "registrations.update",  # payment status
            "registrations.export",
            "finance.read",
            "finance.update",
            "finance.export",
            "finance.reports",
            "admin.dashboard",
            "admin.reports",
        ),
        ORDINARY_USER: (
            "events.read",
            "registrations.read_own",
            "registrations.create",
        ),
    }
)

# Higher number = more privileged. Kept separate from ROLE_PERMISSIONS;
# tests assert the two stay consistent.
ROLE_LEVELS = MappingProxyType(
    {
        ORDINARY_USER: 1,
        EVENT_MANAGER: 2,
        FINANCE_PERSON: 3,
        SUPER_ADMIN: 4,
    }
)

ROLE_DISPLAY_NAMES = MappingProxyType(
    {
        SUPER_ADMIN: "Super Admin",
        EVENT_MANAGER: "Event Manager",
        FINANCE_PERSON: "Finance Manager",
        ORDINARY_USER: "User",
    }
)

ROLE_DESCRIPTIONS = MappingProxyType(
    {
        SUPER_ADMIN: "Full system access with all administrative privileges",
        EVENT_MANAGER: "Manages events and registrations (excluding payment processing)",
        FINANCE_PERSON: "Handles financial aspects, payments, and financial reporting",
        ORDINARY_USER: "Basic user access for event registration and profile management",
    }
)

# Registration vocabularies
PAYMENT_STATUSES = frozenset({"pending", "paid", "confirmed", "cancelled"})
PAYMENT_METHODS = frozenset({"mobile", "bank", "cash", "group_payment", "org_paid"})
DELEGATE_TYPES = frozenset({"private", "public", "international"})
GROUP_PAYMENT_CURRENCIES = frozenset({"ZMW", "USD"})

# Evidence uploads
EVIDENCE_PREFIX = "evidence/"
LEGACY_EVIDENCE_PREFIX = "payment-evidence/"
EVIDENCE_ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "application/pdf"})
EVIDENCE_MAX_BYTES = 10 * 1024 * 1024

# Money columns are NUMERIC(10, 2).
MAX_AMOUNT = Decimal("100000000")

EVIDENCE_CONTENT_TYPES = MappingProxyType(
    {
        "pdf": "application/pdf",
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
        "png": "image/png",
        "doc": "application/msword",
        "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    }
)
