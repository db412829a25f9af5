from __future__ import annotations

from .guards import guard_amendment_window, guard_installation_work_codes

WORKFLOWS = {
    # First settlement of an order by its technician (or the admin override).
    "order_completion": {
        "transitions": {
            "ASSIGNED": {
                "COMPLETED": [guard_installation_work_codes],
                "NOT_COMPLETED": [],
            },
            "COMPLETED": {},
            "NOT_COMPLETED": {},
        }
    },
    # Technician correction, time boxed from completed_at.
    "order_amendment": {
        "transitions": {
            "COMPLETED": {
                "COMPLETED": [guard_amendment_window, guard_installation_work_codes],
                "NOT_COMPLETED": [guard_amendment_window],
            },
            "NOT_COMPLETED": {
                "COMPLETED": [guard_amendment_window, guard_installation_work_codes],
                "NOT_COMPLETED": [guard_amendment_window],
            },
        }
    },
    # Admin / coordinator rewrite, no time limit.
    "order_admin_edit": {
        "transitions": {
            "COMPLETED": {
                "COMPLETED": [guard_installation_work_codes],
                "NOT_COMPLETED": [],
            },
            "NOT_COMPLETED": {
                "COMPLETED": [guard_installation_work_codes],
                "NOT_COMPLETED": [],
            },
        }
    },
    "technician_transfer": {
        "transitions": {
            "PENDING": {"CONFIRMED": [], "REJECTED": [], "CANCELED": []},
            "CONFIRMED": {},
            "REJECTED": {},
            "CANCELED": {},
        }
    },
    "location_transfer": {
        "transitions": {
            "REQUESTED": {"RECEIVED": [], "REJECTED": [], "CANCELED": []},
            "RECEIVED": {},
            "REJECTED": {},
            "CANCELED": {},
        }
    },
}
