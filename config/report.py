"""Presentation constants shared by every report export.

The letterhead printed at the top of each export is fixed text rather than
data.  Keeping it in one place means CSV, workbook, document and image exports
all render the same block.
"""

from __future__ import annotations

ORGANIZATION_LINES: tuple[str, ...] = (
    "Republic of the Philippines",
    "Mindoro State University",
    "A's Duck Farm",
    "Mangangan I, Baco, Oriental Mindoro",
)

REPORT_FOOTER = "Generated by MEGG System - Mindoro State University"

DEFAULT_TIMEZONE = "Asia/Manila"

GENERATED_AT_FORMAT = "%B %d, %Y %I:%M %p"
