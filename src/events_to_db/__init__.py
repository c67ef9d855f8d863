"""
events-to-db: relay an event stream into a relational table.

Subpackages:
    source  - Event service client (subscribe, offsets)
    sink    - Database connection, table schema and batch writer

Modules:
    types     - Event model
    filters   - Subscription filters
    offsets   - Start offset resolution from the sink
    batching  - Size/age triggered batch accumulator
    driver    - Pipeline driver tying it all together
"""

__version__ = "0.2.0"
