"""Node handlers package.

Handlers are grouped by node category:
- ai.py: AI Query, AI Analysis
- control.py: Start, Condition
- data.py: Filter, Sort, Formula, Aggregate, Join/Merge, Data Transform
- files.py: File Input (Excel/CSV)
- http.py: API Integration
- output.py: Spreadsheet Generator
"""

# AI handlers
from .ai import (
    handle_ai_query,
)

# Control handlers
from .control import (
    handle_start,
    handle_condition,
)

# Data handlers
from .data import (
    handle_filter,
    handle_sort,
    handle_formula,
    handle_aggregate,
    handle_join,
    handle_data_transform,
)

# File handlers
from .files import (
    handle_file_input,
)

# Integration handlers
from .http import (
    handle_api_integration,
)

# Output handlers
from .output import (
    handle_spreadsheet_generator,
)

__all__ = [
    "handle_ai_query",
    "handle_start",
    "handle_condition",
    "handle_filter",
    "handle_sort",
    "handle_formula",
    "handle_aggregate",
    "handle_join",
    "handle_data_transform",
    "handle_file_input",
    "handle_api_integration",
    "handle_spreadsheet_generator",
]
