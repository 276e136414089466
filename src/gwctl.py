#!/usr/bin/env python3
"""
CLI tool for the gateway operator
Shows cluster status, triggers reconciles and validates configurations
"""

import json
import os
import time

import click
import requests
import yaml
from tabulate import tabulate

from validation import validate_config_spec

API_BASE_URL = os.getenv("GWCTL_API_URL", "http://localhost:8000/api/v1")


class GatewayOperatorCLI:
    """CLI client for the gateway operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, timeout=30, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None


def _split_cluster(value: str):
    namespace, sep, name = value.partition("/")
    if not sep or not namespace or not name:
        raise click.BadParameter("expected NAMESPACE/NAME", param_hint="CLUSTER")
    return namespace, name


@click.group()
@click.option("--api-url", default=API_BASE_URL, help="Base URL of the operator API")
@click.pass_context
def cli(ctx, api_url):
    """Gateway operator CLI"""
    ctx.obj = GatewayOperatorCLI(api_url)


@cli.command()
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, output, follow, interval):
    """Show the last reconcile outcome of every cluster"""

    def show_status():
        result = client._make_request("GET", "/clusters")
        if result is None:
            return
        if output == "json":
            click.echo(json.dumps(result, indent=2))
            return
        if not result:
            click.echo("No clusters reconciled yet")
            return

        headers = ["Namespace", "Name", "Phase", "Failures", "Last Reconcile", "Message"]
        rows = [
            [
                entry["namespace"],
                entry["name"],
                entry["phase"],
                entry["failures"],
                entry.get("last_reconcile_time") or "Never",
                entry.get("message", ""),
            ]
            for entry in result
        ]
        click.echo(tabulate(rows, headers=headers, tablefmt="grid"))

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                click.clear()
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


@cli.command()
@click.argument("cluster")
@click.pass_obj
def reconcile(client, cluster):
    """Manually trigger reconciliation for NAMESPACE/NAME"""
    namespace, name = _split_cluster(cluster)

    result = client._make_request("POST", f"/clusters/{namespace}/{name}/reconcile")

    if result:
        click.echo(f"Reconciliation triggered for cluster {namespace}/{name}")


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
def validate(filename):
    """Validate a GatewayServiceConfig from a YAML/JSON file"""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)

    if not isinstance(data, dict):
        raise click.ClickException("file does not contain an object")

    # accept either a full object or a bare spec
    spec = data.get("spec", data) if "kind" in data else data
    is_valid, error = validate_config_spec(spec)
    if not is_valid:
        raise click.ClickException(f"Invalid configuration: {error}")
    click.echo("Configuration is valid")


if __name__ == "__main__":
    cli()
