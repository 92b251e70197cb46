"""
Event registrations and payment evidence.

- Users register themselves (always pending), cancel softly, upload initial evidence
- Finance replaces evidence and updates payment fields
- Evidence reads go through app.procuretrain.evidence.EvidenceResolver
"""
