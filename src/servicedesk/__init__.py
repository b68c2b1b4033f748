"""
Service Desk SLA Escalation Engine
==================================

Decides, for every open ticket, whether an SLA escalation threshold has been
crossed, records escalation notifications idempotently and resolves who
should receive them.

Layers:
- Domain: entities, trigger evaluation and re-fire policies
- Application: recipient resolution and the escalation orchestrator
- Infrastructure: SQLAlchemy repositories, YAML config, scheduler
"""

__version__ = "1.0.0"
