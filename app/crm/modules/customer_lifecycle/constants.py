from __future__ import annotations

import enum


class CustomerNature(str, enum.Enum):
    LISTED = "LISTED"  # listed private company
    SME = "SME"  # private small/medium enterprise
    RESEARCH = "RESEARCH"  # research institute
    STATE_OWNED = "STATE_OWNED"


class CustomerImportance(str, enum.Enum):
    A = "A"  # production expected within 3 months
    B = "B"  # within 6 months
    C = "C"  # within a year


class Progress(str, enum.Enum):
    INITIAL_CONTACT = "INITIAL_CONTACT"
    NORMAL_PROGRESS = "NORMAL_PROGRESS"
    DISABLED = "DISABLED"  # frozen while another process reassigns the customer
    PUBLIC_POOL = "PUBLIC_POOL"  # set only by the pool-entry transition


class OperationType(str, enum.Enum):
    ASSIGN = "ASSIGN"
    CLAIM = "CLAIM"
    MOVE_TO_PUBLIC_POOL = "MOVE_TO_PUBLIC_POOL"
    CREATE_AND_ASSIGN = "CREATE_AND_ASSIGN"
    CREATE_AND_CLAIM = "CREATE_AND_CLAIM"


# Values a user may pick through the progress transition or at creation.
SELECTABLE_PROGRESS = frozenset({Progress.INITIAL_CONTACT, Progress.NORMAL_PROGRESS})

# Operation types shown on the public-pool timeline.
PUBLIC_POOL_OPERATIONS = frozenset({OperationType.MOVE_TO_PUBLIC_POOL, OperationType.ASSIGN, OperationType.CLAIM})

# Stored as from_progress on the first ProgressHistory row of a customer.
NO_PROGRESS = "NONE"

MIN_NAME_LENGTH = 2

# customers.annual_demand is a 32-bit INTEGER column.
MAX_ANNUAL_DEMAND = 2_147_483_647
