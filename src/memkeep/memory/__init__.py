"""Memory store: per-record Markdown files plus derived index and stats caches.

Layout:
    ~/.memkeep/memories/
    ├── records/
    │   └── mem_20261019T101500_3fa9c2.md   # YAML frontmatter metadata + content body
    ├── _index.json                          # project/type/tag/entity buckets + timeline
    ├── _stats.json                          # aggregate counters
    └── .versions/                           # Timestamped backups (10 per record)

Record files are the source of truth; both JSON files can be rebuilt from them.
"""
