"""
Redirector Service package.

Rewrites URLs according to user-defined and downloaded rule sets. It
provides:

- app.main: HTTP surface for resolution, rule management and refreshes.
- app.rules: Rule model, resolution to a fixed point, and the declarative
  compiler.
- app.feeds: Online rule feed normalization and concurrent refresh.
- app.storage: Local and synchronized snapshot persistence.
- app.enforcement: The installed set of compiled redirect records.

Guidelines:
- Snapshots are immutable; replace them, never mutate them.
- Resolution never raises on rule data; broken rules are inert.
- Rules the compiler cannot express exactly are declined, not approximated.
"""
