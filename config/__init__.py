"""Configuration helpers for the MEGG inspection dashboard."""

# This package collects runtime configuration assets that can be customised
# without touching the application logic.  Individual modules provide
# structured accessors for specific domains (Supabase schema definitions and
# the fixed report letterhead).
