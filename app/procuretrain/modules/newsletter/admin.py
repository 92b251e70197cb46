from __future__ import annotations

import csv
import io
import re
from datetime import date, datetime, timedelta

from flask import Blueprint, current_app, g, request, send_file

from app.procuretrain.audit import record_event
from app.procuretrain.db import db_session
from app.procuretrain.models import User
from app.procuretrain.modules.newsletter.models import NewsletterSubscription
from app.procuretrain.rbac import require_permission
from app.procuretrain.utils import json_body, text_field

bp = Blueprint("newsletter", __name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_RECENT_WINDOW = timedelta(days=30)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.post("/newsletter/subscribe")
def subscribe():
    payload = json_body()
    email = text_field(payload, "email").lower()
    name = text_field(payload, "name") or None
    if not _EMAIL_RE.match(email):
        return {"message": "A valid email is required."}, 400

    s = db_session()
    existing = s.query(NewsletterSubscription).filter(NewsletterSubscription.email == email).one_or_none()
    if existing:
        return {"message": "Email is already subscribed to newsletter", "subscription": existing.to_dict()}, 200

    sub = NewsletterSubscription(email=email, name=name)
    s.add(sub)
    s.flush()
    record_event(s, actor=getattr(g, "current_user", None), action="newsletter.subscribe", entity_type="NewsletterSubscription", entity_id=sub.id)
    s.commit()
    current_app.logger.info("New newsletter subscription id=%s", sub.id)
    return {"message": "Successfully subscribed to newsletter", "subscription": sub.to_dict()}, 201


@bp.get("/admin/newsletter-subscriptions")
@require_permission("newsletter.read")
def list_subscriptions():
    s = db_session()
    subs = s.query(NewsletterSubscription).order_by(NewsletterSubscription.subscribed_at.desc()).all()
    cutoff = datetime.utcnow() - _RECENT_WINDOW
    return {
        "subscriptions": [x.to_dict() for x in subs],
        "stats": {
            "total": len(subs),
            "recentSubscriptions": sum(1 for x in subs if x.subscribed_at and x.subscribed_at > cutoff),
        },
    }


@bp.get("/admin/newsletter-subscriptions/export")
@require_permission("newsletter.export")
def export_subscriptions():
    s = db_session()
    u = _current_user()
    subs = s.query(NewsletterSubscription).order_by(NewsletterSubscription.subscribed_at.asc()).all()

    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(["Email", "Name", "Subscribed At"])
    for x in subs:
        w.writerow([x.email, x.name or "", x.subscribed_at.isoformat() if x.subscribed_at else ""])

    record_event(
        s,
        actor=u,
        action="newsletter.export",
        entity_type="NewsletterSubscription",
        entity_id="export",
        metadata={"row_count": len(subs)},
    )
    s.commit()
    filename = f"newsletter_subscriptions_{date.today().strftime('%Y%m%d')}.csv"
    return send_file(io.BytesIO(out.getvalue().encode("utf-8")), mimetype="text/csv", as_attachment=True, download_name=filename, max_age=0)


@bp.post("/admin/email-blast")
@require_permission("newsletter.send")
def email_blast():
    """Outbound email is not wired up; the request is validated and audited only."""
    s = db_session()
    u = _current_user()
    payload = json_body()
    subject = text_field(payload, "subject")
    content = text_field(payload, "content")
    if not subject or not content:
        return {"message": "Subject and content required"}, 400

    recipients = payload.get("recipients")
    if recipients is not None and not isinstance(recipients, list):
        return {"message": "recipients must be a list of emails"}, 400
    recipient_count = len(recipients) if recipients is not None else s.query(NewsletterSubscription).count()

    record_event(
        s,
        actor=u,
        action="newsletter.email_blast",
        entity_type="NewsletterSubscription",
        entity_id="blast",
        metadata={"subject": subject, "recipient_count": recipient_count, "status": "not_sent"},
    )
    s.commit()
    return {
        "message": "Email blast recorded; outbound email is not configured",
        "details": {"subject": subject, "recipientCount": recipient_count, "status": "not_sent"},
    }
