"""
Domain signals.

State machines publish changes here and the owning services subscribe.
Receivers run synchronously inside the publisher's transaction, so a receiver
error rejects the whole operation.

Signals (sender is always the publishing service module name):
    item_status_changed     item, request, old_status, new_status, action, actor
    request_status_changed  request, old_status, new_status, actor
    approval_decided        approval, action, reviewer, remarks
    reminder_escalated      reminder, organization_id, retry_count, last_error
    occurrence_generated    occurrence, task, now
"""

from blinker import Namespace

_signals = Namespace()

item_status_changed = _signals.signal("item-status-changed")
request_status_changed = _signals.signal("request-status-changed")
approval_decided = _signals.signal("approval-decided")
reminder_escalated = _signals.signal("reminder-escalated")
occurrence_generated = _signals.signal("occurrence-generated")
