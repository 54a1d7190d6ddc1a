"""
Access rules package.

Defines the door, rule and decision models and the evaluation pipeline
used by the Door Access Service. Rules only grant; a request is denied
when nothing matches.

Modules of interest:
- models: Dataclasses for doors, rules, contexts and results, plus API models.
- matcher: Per-rule predicate including weekly time slots.
- resolver: Precedence ordering and the final GRANTED/DENIED decision.
- engine: The evaluation state machine.
- provisioning: Main entrance auto-access rule.
"""
