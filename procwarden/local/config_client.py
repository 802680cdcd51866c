import json
import time
import logging
import requests
from typing import Dict, Any, List, Optional

log = logging.getLogger(__name__)


def _base_url(host: str, port: int) -> str:
    return f"http://{host}:{port}"


def fetch_config_from_supervisor(host: str, port: int, retries: int = 5, delay: float = 0.5) -> Optional[Dict[str, Any]]:
    """
    Fetches the live configuration from the Supervisor's control API.

    :param host: The host of the Supervisor's control API.
    :param port: The port of the Supervisor's control API.
    :param retries: Number of times to retry fetching if the API isn't ready.
    :param delay: Delay in seconds between retries.
    :return: A dictionary containing the configuration, or None on failure.
    """
    url = f"{_base_url(host, port)}/config"
    for attempt in range(retries):
        try:
            response = requests.get(url, timeout=2)
            response.raise_for_status()
            config_data = response.json()
            log.debug(f"Fetched configuration from Supervisor API at '{url}'.")
            return config_data
        except requests.exceptions.RequestException as e:
            log.debug(
                f"Could not connect to Supervisor control API (attempt {attempt + 1}/{retries}): {e}. "
                f"Retrying in {delay}s..."
            )
            time.sleep(delay)
        except json.JSONDecodeError as e:
            log.error(f"Failed to decode configuration JSON from Supervisor: {e}")
            return None # Do not retry on malformed data

    log.error(f"Failed to fetch configuration from Supervisor after {retries} attempts.")
    return None


def _error_detail(e: requests.exceptions.RequestException) -> str:
    try:
        return e.response.json().get("detail", "No details provided.")
    except (AttributeError, json.JSONDecodeError, TypeError, ValueError):
        return str(e)


def post_config_to_supervisor(host: str, port: int, key: str, value: Any) -> bool:
    """
    Posts a configuration change to the Supervisor's control API.

    :param host: The host of the Supervisor's control API.
    :param port: The port of the Supervisor's control API.
    :param key: The configuration key to update.
    :param value: The new value for the configuration key.
    :return: True if the update was successful, False otherwise.
    """
    url = f"{_base_url(host, port)}/config"
    payload = {"key": key, "value": value}
    try:
        response = requests.post(url, json=payload, timeout=5)
        response.raise_for_status()
        log.info(f"Successfully posted config update for '{key}' to Supervisor.")
        return True
    except requests.exceptions.RequestException as e:
        log.error(f"Failed to post configuration update to Supervisor: {_error_detail(e)}")
        return False


def fetch_status_report(host: str, port: int) -> Optional[Dict[str, Any]]:
    """
    Fetches the full status report: supervisor PID, ecosystem file, env and instances.

    :return: The report dictionary, or None if the Supervisor is unreachable.
    """
    try:
        response = requests.get(f"{_base_url(host, port)}/status", timeout=2)
        response.raise_for_status()
        return response.json()
    except (requests.exceptions.RequestException, ValueError) as e:
        log.debug(f"Supervisor status endpoint unreachable: {e}")
        return None


def fetch_status(host: str, port: int) -> Optional[List[Dict[str, Any]]]:
    """Fetches the per-instance status table, or None if unreachable."""
    report = fetch_status_report(host, port)
    return report.get("instances", []) if report is not None else None


def send_app_action(host: str, port: int, app_name: str, action: str) -> bool:
    """
    Asks the Supervisor to start, stop or restart every instance of an app.

    :param app_name: The logical app name from the ecosystem file.
    :param action: One of 'start', 'stop', 'restart'.
    :return: True if the Supervisor accepted the action.
    """
    url = f"{_base_url(host, port)}/apps/{app_name}/{action}"
    try:
        response = requests.post(url, timeout=30)
        response.raise_for_status()
        log.info(response.json().get("message", f"'{action}' sent for '{app_name}'."))
        return True
    except requests.exceptions.RequestException as e:
        log.error(f"Failed to {action} '{app_name}': {_error_detail(e)}")
        return False


def request_log_reload(host: str, port: int) -> bool:
    """Asks the Supervisor to reopen every app log file."""
    try:
        response = requests.post(f"{_base_url(host, port)}/logs/reload", timeout=5)
        response.raise_for_status()
        log.info("Supervisor reopened all log files.")
        return True
    except requests.exceptions.RequestException as e:
        log.error(f"Failed to reload logs: {_error_detail(e)}")
        return False
