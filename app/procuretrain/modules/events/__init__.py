"""
Events module.

- Public listings: all, upcoming (with seat availability), past, search
- Admin CRUD gated by the events.* permissions
- current_attendees is a cache of active (non-cancelled) registrations
"""
