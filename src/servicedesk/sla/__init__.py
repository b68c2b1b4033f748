"""
SLA Escalation Module
=====================

Bounded Context for multi-level escalation of service desk tickets.

Responsibilities:
- Decide which escalation rules fire for a ticket's SLA tracking snapshot
- Resolve who gets notified for each fired rule
- Record every fired escalation exactly once in the notification log
- Sweep all open tickets on a schedule
- Expose pending notifications and delivery outcomes to the delivery worker
"""
