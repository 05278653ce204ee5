# deployment_engine/domain/templates/pm2.py
"""pm2 ecosystem file for the application process."""

import json
from typing import Any, Dict

from deployment_engine.core.models import ServiceDescriptor


def ecosystem_app(descriptor: ServiceDescriptor) -> Dict[str, Any]:
    policy = descriptor.restart_policy
    return {
        "name": descriptor.name,
        "script": descriptor.script,
        "cwd": str(descriptor.cwd),
        "instances": descriptor.instances,
        "exec_mode": "cluster" if descriptor.instances > 1 else "fork",
        "env": dict(descriptor.env),
        "autorestart": policy.autorestart,
        "max_restarts": policy.max_restarts,
        "min_uptime": policy.min_uptime,
        "restart_delay": policy.restart_delay_ms,
        "watch": False,
        "max_memory_restart": descriptor.max_memory_restart,
        "error_file": descriptor.error_file,
        "out_file": descriptor.out_file,
        "log_file": descriptor.log_file,
        "time": True,
    }


def render_ecosystem(descriptor: ServiceDescriptor) -> str:
    """CommonJS module, so it loads even when package.json says ``"type": "module"``."""
    body = json.dumps({"apps": [ecosystem_app(descriptor)]}, indent=2)
    return (
        "// Managed by deployment-engine. Changes are overwritten on deploy/fix.\n"
        f"module.exports = {body};\n"
    )

