"""
Logging helpers on top of pulumi.log.

Inside a Pulumi program the messages go to the engine; anywhere else
pulumi.log prints them to stderr, so the same calls work in tests and
dry runs.
"""

import pulumi


def _format(component: str, msg: str) -> str:
    return f"[{component}] {msg}" if component else msg


def debug(msg: str, component: str = "") -> None:
    pulumi.log.debug(_format(component, msg))


def info(msg: str, component: str = "") -> None:
    pulumi.log.info(_format(component, msg))


def warn(msg: str, component: str = "") -> None:
    pulumi.log.warn(_format(component, msg))


def error(msg: str, component: str = "") -> None:
    pulumi.log.error(_format(component, msg))
