# deployment_engine/domain/templates/nginx.py
"""Nginx virtual host for the application."""

from pathlib import Path

from deployment_engine.core.models import ProxyRoute


def render_proxy_route(route: ProxyRoute) -> str:
    """Render a ``server`` block proxying ``listen_port`` to the application."""
    upstream = f"http://127.0.0.1:{route.upstream_port}"

    lines = [
        f"# Managed by deployment-engine ({route.name})",
        "server {",
        f"    listen {route.listen_port};",
        f"    server_name {route.server_name};",
        f"    client_max_body_size {route.client_max_body_size};",
        "",
    ]

    if route.gzip:
        lines += [
            "    gzip on;",
            "    gzip_vary on;",
            "    gzip_min_length 1024;",
            "    gzip_proxied any;",
            "    gzip_types text/plain text/css application/json application/javascript "
            "text/xml application/xml image/svg+xml;",
            "",
        ]

    lines += [
        "    location / {",
        f"        proxy_pass {upstream};",
        "        proxy_http_version 1.1;",
    ]
    for header, value in route.forwarded_headers.items():
        lines.append(f"        proxy_set_header {header} {value};")
    lines += [
        "        proxy_cache_bypass $http_upgrade;",
        "        proxy_read_timeout 86400;",
        "        proxy_connect_timeout 60s;",
        "        proxy_send_timeout 60s;",
        "    }",
        "",
    ]

    if route.static_extensions:
        extensions = "|".join(route.static_extensions)
        lines += [
            f"    location ~* \\.({extensions})$ {{",
            f"        proxy_pass {upstream};",
            "        proxy_set_header Host $host;",
            f"        expires {route.static_cache_expires};",
            '        add_header Cache-Control "public, immutable";',
            "    }",
            "",
        ]

    for header, value in route.security_headers.items():
        lines.append(f"    add_header {header} {value} always;")

    lines.append("}")
    return "\n".join(lines) + "\n"


def render_validation_harness(candidate: Path, mime_types: Path, pid_file: Path) -> str:
    """
    Minimal top-level config that includes only ``candidate``.

    ``nginx -t -c <harness>`` checks the candidate's syntax without touching
    the live configuration.
    """
    return "\n".join([
        f"pid {pid_file};",
        "events {}",
        "http {",
        f"    include {mime_types};",
        f"    include {candidate};",
        "}",
    ]) + "\n"
