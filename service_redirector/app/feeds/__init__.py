"""
Rule feed package.

- normalizer: Parses fetched feed documents (current and legacy formats)
  into online rule groups.
- refresher: Fetches every auto-updating feed concurrently, collects
  per-feed download and parse failures, and hands the merged store back to
  the runtime.
"""
