"""Built-in rule set, in the same declarative shape accepted by RuleStore.load_rules."""

_OPERATED_EQUIPMENT = ["paver", "roller", "excavator", "sweeper", "millingMachine", "dozer", "payloader", "skidsteer", "grader"]

DEFAULT_RULES = {
    "job_types": {
        "default": {
            "rows": {
                "Forman": {"allowed_types": ["foreman"], "max_count": 1},
                "Equipment": {"allowed_types": ["operator", "laborer", "equipment"] + _OPERATED_EQUIPMENT},
                "Crew": {"allowed_types": ["laborer", "striper", "operator", "foreman"]},
                "Trucks": {"allowed_types": ["truck", "driver", "privateDriver", "laborer"]},
                "Sweeper": {"allowed_types": ["sweeper", "operator"]},
                "Tack": {"allowed_types": ["truck", "driver"]},
                "MPT": {"allowed_types": ["truck", "driver", "laborer"]},
            }
        },
        "milling": {
            "rows": {
                "Equipment": {"allowed_types": ["millingMachine", "skidsteer", "operator"]},
                "Crew": {"allowed_types": ["laborer", "operator"]},
            }
        },
        "paving": {
            "rows": {
                "Equipment": {"allowed_types": ["paver", "roller", "skidsteer", "operator", "laborer"]},
            }
        },
    },
    "attachments": (
        [
            {
                "source": "operator",
                "target": equipment,
                "max_count": 1,
                "required_for_finalization": True,
                "safety": True,
            }
            for equipment in _OPERATED_EQUIPMENT
        ]
        + [
            {"source": "laborer", "target": "paver", "max_count": 2},
            {"source": "driver", "target": "truck", "max_count": 1, "required_for_finalization": True, "safety": True},
            {"source": "privateDriver", "target": "truck", "max_count": 1},
            {"source": "laborer", "target": "truck", "max_count": 1},
        ]
    ),
}
