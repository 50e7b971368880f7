#!/usr/bin/env python3
"""
CLI tool for the image reflector
Provides kubectl-like interface for ImageRepository records and registry secrets
"""

import base64
import json

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = "http://localhost:8000/api/v1"
DOCKER_CONFIG_JSON_TYPE = "kubernetes.io/dockerconfigjson"


class ImageReflectorCLI:
    """CLI client for the image reflector API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            if response.status_code == 204 or not response.content:
                return {}
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


def split_key(key: str):
    """Split NAMESPACE/NAME"""
    namespace, sep, name = key.partition("/")
    if not sep or not namespace or not name:
        raise click.BadParameter(f"expected NAMESPACE/NAME, got {key!r}")
    return namespace, name


def repository_path(key: str) -> str:
    namespace, name = split_key(key)
    return f"/namespaces/{namespace}/imagerepositories/{name}"


def docker_config_json(server: str, username: str, password: str) -> bytes:
    """Build a .dockerconfigjson document holding one registry login"""
    auth = base64.b64encode(f"{username}:{password}".encode()).decode()
    document = {
        "auths": {
            server: {"username": username, "password": password, "auth": auth}
        }
    }
    return json.dumps(document).encode()


def ready_columns(record):
    """Ready status, reason and message of a record, or blanks"""
    ready = record.get("status", {}).get("ready") or {}
    return (
        ready.get("status", "Unknown"),
        ready.get("reason", ""),
        ready.get("message", ""),
    )


@click.group()
@click.option(
    "--api-url",
    envvar="IRCTL_API_URL",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the image reflector API",
)
@click.pass_context
def cli(ctx, api_url):
    """Image reflector CLI - kubectl-like interface for image repositories"""
    ctx.obj = ImageReflectorCLI(api_url)


@cli.command()
@click.option(
    "--filename", "-f", required=True, type=click.Path(exists=True), help="Manifest"
)
@click.pass_obj
def apply(client, filename):
    """Apply an ImageRepository from a YAML/JSON manifest"""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)

    metadata = data.get("metadata") or {}
    namespace = metadata.get("namespace", "default")
    name = metadata.get("name")
    if not name:
        raise click.UsageError("manifest is missing metadata.name")

    result = client._make_request(
        "PUT",
        f"/namespaces/{namespace}/imagerepositories/{name}",
        json={"spec": data.get("spec") or {}},
    )

    if result:
        click.echo(f"imagerepository/{namespace}/{name} configured")
        click.echo(f"Generation: {result['metadata']['generation']}")


@cli.command()
@click.option("--namespace", "-n", default=None, help="Only this namespace")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.pass_obj
def get(client, namespace, output):
    """List image repositories"""
    params = {"namespace": namespace} if namespace else {}
    result = client._make_request("GET", "/imagerepositories", params=params)
    if result is None:
        return

    if output == "json":
        click.echo(json.dumps(result, indent=2))
    elif output == "yaml":
        click.echo(yaml.dump(result, default_flow_style=False))
    else:
        headers = ["Namespace", "Name", "Image", "Ready", "Tags", "Message"]
        rows = []
        for record in result:
            status, _, message = ready_columns(record)
            rows.append(
                [
                    record["metadata"]["namespace"],
                    record["metadata"]["name"],
                    record["spec"].get("image", ""),
                    status,
                    record.get("status", {})
                    .get("lastScanResult", {})
                    .get("tagCount", 0),
                    message[:60],
                ]
            )
        click.echo(tabulate(rows, headers=headers, tablefmt="simple"))


@cli.command()
@click.argument("key")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, key, output):
    """Describe an image repository (NAMESPACE/NAME)"""
    result = client._make_request("GET", repository_path(key))

    if result:
        if output == "yaml":
            click.echo(yaml.dump(result, default_flow_style=False))
        else:
            click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("key")
@click.pass_obj
def tags(client, key):
    """Show the tags found by the last scan"""
    result = client._make_request("GET", f"{repository_path(key)}/tags")

    if result:
        click.echo(f"Canonical name: {result['canonicalImageName']}")
        for tag in result["tags"]:
            click.echo(tag)


@cli.command()
@click.argument("key")
@click.pass_obj
def reconcile(client, key):
    """Trigger reconciliation of an image repository"""
    result = client._make_request("POST", f"{repository_path(key)}/reconcile")

    if result:
        click.echo(result["message"])


@cli.command()
@click.argument("key")
@click.confirmation_option(prompt="Are you sure you want to delete this repository?")
@click.pass_obj
def delete(client, key):
    """Delete an image repository"""
    result = client._make_request("DELETE", repository_path(key))

    if result is not None:
        click.echo(f"imagerepository/{key} deleted")


@cli.command("create-secret")
@click.argument("key")
@click.option("--server", required=True, help="Registry host, e.g. ghcr.io")
@click.option("--username", required=True)
@click.option("--password", required=True, prompt=True, hide_input=True)
@click.pass_obj
def create_secret(client, key, server, username, password):
    """Store registry credentials as a docker config secret"""
    namespace, name = split_key(key)
    payload = docker_config_json(server, username, password)

    result = client._make_request(
        "PUT",
        f"/namespaces/{namespace}/secrets/{name}",
        json={
            "type": DOCKER_CONFIG_JSON_TYPE,
            "data": {".dockerconfigjson": base64.b64encode(payload).decode()},
        },
    )

    if result:
        click.echo(f"secret/{namespace}/{name} configured")


if __name__ == "__main__":
    cli()
