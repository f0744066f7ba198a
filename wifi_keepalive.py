#!/usr/bin/env python3
import logging
import logging.handlers
import os
import re
import shlex
import subprocess
import sys
import time

import psutil

IFACE = "wlan0"
CONNECTION = "wlan0"
TARGET = "google.com"

PROBE_TRIES = 3
PROBE_TIMEOUT = 5
RADIO_DELAY = 10
SETTLE_DELAY = 10

# NetworkManager device states we act on
UNMANAGED, UNAVAILABLE, DISCONNECTED, CONNECTED = 10, 20, 30, 100
_STATE_RE = re.compile(r"\b(100|10|20|30)\s*\(")

log = logging.getLogger("wifi-keepalive")


def _run(cmd: str):
    try:
        # nmcli output is matched against English keywords
        p = subprocess.run(shlex.split(cmd), capture_output=True, text=True,
                           env=dict(os.environ, LC_ALL="C"))
    except FileNotFoundError:
        log.error("command not found: %s", cmd.split()[0])
        return 127, ""
    return p.returncode, p.stdout


def http_ok(target: str = TARGET) -> bool:
    rc, _ = _run(f"wget -q --spider --tries={PROBE_TRIES} --timeout={PROBE_TIMEOUT} {shlex.quote(target)}")
    return rc == 0


def radio_enabled() -> bool:
    rc, out = _run("nmcli radio wifi")
    return rc == 0 and out.strip() == "enabled"


def enable_radio() -> bool:
    rc, _ = _run("nmcli radio wifi on")
    return rc == 0


def parse_device_status(text: str):
    """Return 10/20/30/100 from ``GENERAL.STATE: 100 (connected)`` text, or None."""
    m = _STATE_RE.search(text)
    return int(m.group(1)) if m else None


def device_status(iface: str = IFACE):
    rc, out = _run(f"nmcli -f GENERAL.STATE device show {shlex.quote(iface)}")
    status = parse_device_status(out)
    if status is None:
        log.warning("no device state for %s (nmcli rc=%d): %r", iface, rc, out.strip())
    return status


def device_up(iface: str = IFACE) -> bool:
    rc, _ = _run(f"nmcli device connect {shlex.quote(iface)}")
    return rc == 0


def count_active(name: str, text: str) -> int:
    # terse mode escapes ':' in names
    return sum(1 for line in text.splitlines() if line.strip().replace("\\:", ":") == name)


def active_connections(name: str = CONNECTION) -> int:
    _, out = _run("nmcli -t -f NAME connection show --active")
    return count_active(name, out)


def connection_up(name: str = CONNECTION) -> bool:
    rc, _ = _run(f"nmcli connection up {shlex.quote(name)}")
    return rc == 0


def link_snapshot(iface: str = IFACE):
    st = psutil.net_if_stats().get(iface)
    if st is None:
        return None
    return {"isup": st.isup, "speed": st.speed}


def run_once(iface: str = IFACE,
             connection: str = CONNECTION,
             target: str = TARGET) -> bool:
    """
    1. Probe <target>. If OK → done.
    2. Radio disabled → enable, wait, probe.
    3. Device not connected → bring device up, wait, probe.
    4. Device connected but <connection> inactive → bring it up, wait, probe.
    """
    if http_ok(target):
        log.info("%s reachable, nothing to do", target)
        return True

    recovering = True
    log.critical("%s unreachable via %s, starting recovery", target, iface)

    if not radio_enabled():
        log.info("wifi radio disabled → enabling")
        if enable_radio():
            time.sleep(RADIO_DELAY)
            if http_ok(target):
                recovering = False
                log.info("recovered after enabling radio")
            else:
                log.warning("still unreachable after enabling radio")
        else:
            log.error("could not enable wifi radio (root required?)")

    status = None
    if recovering:
        status = device_status(iface)
        if status != CONNECTED:
            log.info("device %s state %s → connecting", iface, status)
            if device_up(iface):
                time.sleep(SETTLE_DELAY)
                if http_ok(target):
                    recovering = False
                    log.info("recovered after bringing up %s", iface)
                else:
                    log.warning("still unreachable after bringing up %s", iface)
                    status = device_status(iface)
            else:
                log.error("nmcli could not bring up device %s", iface)

    if recovering and status == CONNECTED and active_connections(connection) == 0:
        log.info("device %s up but connection %s down → activating", iface, connection)
        if connection_up(connection):
            time.sleep(SETTLE_DELAY)
            if http_ok(target):
                recovering = False
                log.info("recovered after activating %s", connection)
            else:
                log.warning("still unreachable after activating %s", connection)
        else:
            log.error("nmcli could not activate connection %s", connection)

    if recovering:
        log.error("%s still unreachable (device state %s, link %s); cause may be beyond %s",
                  target, status, link_snapshot(iface), iface)
    return not recovering


def setup_logging(name: str = "wifi-keepalive") -> None:
    log.setLevel(logging.INFO)
    log.handlers.clear()
    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    log.addHandler(stream)
    if os.path.exists("/dev/log"):
        try:
            sysh = logging.handlers.SysLogHandler(address="/dev/log")
        except OSError as e:
            log.warning("syslog unavailable, logging to stderr only: %s", e)
            return
        sysh.ident = f"{name}: "
        sysh.priority_map = dict(sysh.priority_map, CRITICAL="alert")
        log.addHandler(sysh)


def main() -> int:
    setup_logging()
    try:
        run_once()
    except Exception:
        log.exception("wifi keepalive run failed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
