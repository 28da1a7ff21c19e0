"""
Rules engine package.

Defines the rule model and the resolution algorithm used by the Redirector
Service. Rules are matched in order inside a group, groups are consulted
custom-first, and the whole store is iterated to a fixed point so chained
redirects resolve in one call while cycles resolve to no redirect.

Modules of interest:
- schema: Persisted snapshot documents (camelCase keys).
- models: Rule, RuleGroup, OnlineRuleGroup and RuleStore with resolution.
- transforms: Capture-group transforms for rules that declare ``process``.
- compiler: Declarative compilation for engine-evaluated enforcement.
- engine: Versioned snapshot holder and the resolution entry point.
"""
