from __future__ import annotations

import argparse
import contextlib
import io
import json
import os
import sys
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
import click
import typer
from dotenv import load_dotenv
from rich.console import Console

from access_router.account_factory import AccountFactory, accounts_document
from access_router.config import RouterConfig, load_config
from access_router.environments import ENVIRONMENT_ORDER
from access_router.errors import ConfigError, RouterError, UnknownEnvironment
from access_router.exchange import CredentialExchange, TemporaryCredentials
from access_router.modules import plan_modules
from access_router.state_store import DynamoStateStore
from access_router.trust import deployment_policy_document, trust_policy_document
from access_router.workflow import RunRequest, route

from . import __version__
from . import github_oidc
from .cli_shared import (
    ROUTER_ACCOUNTS_FILE,
    ROUTER_BROKER_ENDPOINT,
    ROUTER_POLICY_IDS,
    ROUTER_STATE_TABLE,
    GlobalOpts,
    OpError,
    UsageError,
    _env_or_none,
    _eprint,
    _http_request,
    _json_obj_or_error,
    _load_json_object,
    _parse_csv,
    _print_json,
    _require_str,
    _write_secure_json,
)

_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _bootstrap_env() -> None:
    # Use python-dotenv package defaults: discover and load .env without
    # overriding already-exported process environment values.
    load_dotenv()


def _root_help_text(*, prog_name: str) -> str:
    buf = io.StringIO()
    try:
        with contextlib.redirect_stdout(buf):
            try:
                app(args=["--help"], prog_name=prog_name, standalone_mode=False)
            except (typer.Exit, click.ClickException):
                pass
    except Exception:
        return ""
    return str(buf.getvalue() or "").strip()


def _render_usage_error_with_help(
    *,
    message: str,
    ctx: click.Context | None = None,
    fallback_help: str = "",
) -> None:
    _rich_error(message)
    help_text = ""
    if isinstance(ctx, click.Context):
        help_text = str(ctx.get_help() or "").strip()
    if not help_text:
        help_text = str(fallback_help or "").strip()
    if help_text:
        _eprint("")
        _eprint(help_text)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"access-router {__version__}")
        raise typer.Exit(code=0)


app = typer.Typer(
    name="access-router",
    help="Per-environment account routing and CI credential exchange.",
    no_args_is_help=True,
    add_completion=False,
)
envs_app = typer.Typer(help="Registered environments", no_args_is_help=True)
factory_app = typer.Typer(
    help="Account factory (management account credentials required)",
    no_args_is_help=True,
)
state_app = typer.Typer(help="Versioned state records", no_args_is_help=True)

app.add_typer(envs_app, name="envs")
app.add_typer(factory_app, name="factory")
app.add_typer(state_app, name="state")


@app.callback()
def app_callback(
    ctx: typer.Context,
    accounts_file: str | None = typer.Option(
        None,
        "--accounts-file",
        help=f"Bootstrap accounts.json overlay (env override: {ROUTER_ACCOUNTS_FILE})",
    ),
    state_table: str | None = typer.Option(
        None,
        "--state-table",
        help=f"DynamoDB state table name (env override: {ROUTER_STATE_TABLE})",
    ),
    region: str | None = typer.Option(None, "--region", help="AWS region for API clients"),
    pretty: bool = typer.Option(False, "--pretty", help="Indent JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Reduce stderr logging"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
) -> None:
    del version
    ctx.obj = {
        "g": GlobalOpts(
            pretty=pretty,
            quiet=quiet,
            accounts_file=accounts_file or _env_or_none(ROUTER_ACCOUNTS_FILE) or "",
            state_table=state_table or _env_or_none(ROUTER_STATE_TABLE) or "",
            region=region or _env_or_none("AWS_REGION", "AWS_DEFAULT_REGION") or "",
        )
    }


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    root = ctx.find_root()
    if isinstance(root.obj, dict) and isinstance(root.obj.get("g"), GlobalOpts):
        return root.obj["g"]
    return GlobalOpts(pretty=False, quiet=False)


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    g = _ctx_global(ctx)
    args = argparse.Namespace(**kwargs)
    try:
        code = int(func(args, g))
    except (UsageError, UnknownEnvironment, ConfigError) as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    except (OpError, RouterError, ClientError, BotoCoreError) as e:
        _rich_error(str(e))
        raise typer.Exit(code=1)
    if code:
        raise typer.Exit(code=code)


def _config(g: GlobalOpts) -> RouterConfig:
    return load_config(accounts_file=g.accounts_file or None)


def _state_store(g: GlobalOpts) -> Any:
    table = _require_str(g.state_table, "state table", hint=f"pass --state-table or set {ROUTER_STATE_TABLE}")
    return DynamoStateStore(table, region=g.region or None)


def _factory_log(g: GlobalOpts):
    def log(event: dict[str, Any]) -> None:
        if not g.quiet:
            _eprint(json.dumps(event, separators=(",", ":"), sort_keys=True))

    return log


def _factory(g: GlobalOpts, config: RouterConfig, *, policy_ids: list[str] | None = None) -> AccountFactory:
    return AccountFactory(
        config,
        _state_store(g),
        default_policy_ids=policy_ids or [],
        log=_factory_log(g),
    )


# Commands


def cmd_envs_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    config = _config(g)
    _print_json(
        {
            "githubRepo": config.github_repo,
            "projectName": config.project_name,
            "environments": [e.summary() for e in config.environments],
        },
        pretty=g.pretty,
    )
    return 0


def cmd_envs_show(args: argparse.Namespace, g: GlobalOpts) -> int:
    config = _config(g)
    env = config.select(args.environment)
    out = env.summary()
    out["backend"] = {
        "bucket": config.state_bucket(env),
        "key": config.state_key(env),
        "dynamodbTable": config.lock_table(env),
    }
    _print_json(out, pretty=g.pretty)
    return 0


def cmd_trust_policy(args: argparse.Namespace, g: GlobalOpts) -> int:
    config = _config(g)
    env = config.select(args.environment)
    _print_json(
        {
            "roleArn": env.role_arn,
            "trustPolicy": trust_policy_document(env.trust, account_id=env.account_id),
            "deploymentPolicy": deployment_policy_document(
                project_name=config.project_name, environment=env.name
            ),
        },
        pretty=g.pretty,
    )
    return 0


def cmd_plan(args: argparse.Namespace, g: GlobalOpts) -> int:
    config = _config(g)
    env = config.select(args.environment)
    _print_json(plan_modules(env, config).as_dict(), pretty=g.pretty)
    return 0


def cmd_route(args: argparse.Namespace, g: GlobalOpts) -> int:
    config = _config(g)
    request = RunRequest.from_inputs(
        {
            "environment": args.environment,
            "deploy_infrastructure": args.deploy_infrastructure,
            "deploy_website": args.deploy_website,
        },
        run_id=args.run_id or _env_or_none("GITHUB_RUN_ID") or "",
    )
    plan = route(request, config)
    written = github_oidc.write_step_outputs(plan.outputs())
    if written and not g.quiet:
        _eprint(f"wrote step outputs to {written}")
    _print_json(plan.as_dict(), pretty=g.pretty)
    return 0


def _resolve_token(args: argparse.Namespace) -> str:
    if args.token_file:
        path = Path(args.token_file)
        try:
            token = path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise UsageError(f"cannot read token file {path}: {e}") from e
        return _require_str(token, "OIDC token", hint=f"{path} is empty")
    token = args.token or _env_or_none("ROUTER_OIDC_TOKEN")
    if token:
        return token.strip()
    if args.from_github or _env_or_none(github_oidc.ACTIONS_ID_TOKEN_REQUEST_URL):
        return github_oidc.fetch_id_token()
    raise UsageError("missing OIDC token (pass --token, --token-file or --from-github)")


def _exchange_via_broker(*, endpoint: str, token: str, environment: str) -> dict[str, Any]:
    url = endpoint.rstrip("/")
    if not url.endswith("/v1/credentials"):
        url = f"{url}/v1/credentials"
    status, _hdrs, raw = _http_request(
        method="POST",
        url=url,
        headers={"authorization": f"Bearer {token}", "content-type": "application/json"},
        body=json.dumps({"environment": environment}, separators=(",", ":")).encode("utf-8"),
    )
    doc = _json_obj_or_error(raw=raw, label="credential broker")
    if status < 200 or status >= 300:
        code = str(doc.get("errorCode") or "")
        message = str(doc.get("message") or "")
        if code == "UNKNOWN_ENVIRONMENT":
            raise UsageError(message or f"unknown environment {environment!r}")
        raise OpError(f"credential broker failed: status={status} errorCode={code} message={message}")
    return doc


def _emit_credentials(
    *,
    g: GlobalOpts,
    fmt: str,
    creds: TemporaryCredentials,
    region: str,
    github_env: Path | None,
) -> None:
    env_values = creds.env_exports()
    env_values["AWS_REGION"] = region
    if github_env is not None:
        for key in ("AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN"):
            sys.stdout.write(github_oidc.mask_command(env_values[key]) + "\n")
        github_oidc.export_env(env_values)

    if fmt == "credential-process":
        _print_json(creds.credential_process_output(), pretty=g.pretty)
    elif fmt == "env":
        for key, val in env_values.items():
            if val:
                sys.stdout.write(f"export {key}={val}\n")
    else:
        # Default output never contains key material.
        describe = creds.describe()
        describe["region"] = region
        _print_json(describe, pretty=g.pretty)


def cmd_exchange(args: argparse.Namespace, g: GlobalOpts) -> int:
    fmt = str(args.format or "json").strip().lower()
    if fmt not in ("json", "credential-process", "env"):
        raise UsageError("invalid --format (expected json, credential-process or env)")
    github_env: Path | None = None
    if args.export_github_env:
        # Checked before any credential material exists.
        github_env = github_oidc.github_env_path()
        if github_env is None:
            raise UsageError("missing GITHUB_ENV (only available inside GitHub Actions)")
    token = _resolve_token(args)
    broker = args.broker or _env_or_none(ROUTER_BROKER_ENDPOINT)

    if broker:
        doc = _exchange_via_broker(endpoint=broker, token=token, environment=args.environment)
        creds = TemporaryCredentials.from_broker_document(doc)
        region = str(doc.get("region") or "")
    else:
        config = _config(g)
        env = config.select(args.environment)
        creds = CredentialExchange(region=env.region).exchange(
            token, env, run_id=args.run_id or _env_or_none("GITHUB_RUN_ID") or ""
        )
        region = env.region
    _emit_credentials(g=g, fmt=fmt, creds=creds, region=region, github_env=github_env)
    return 0


def cmd_factory_request(args: argparse.Namespace, g: GlobalOpts) -> int:
    config = _config(g)
    req = _factory(g, config).request(args.environment, email=args.email, account_name=args.account_name or "")
    _print_json(req.to_dict(), pretty=g.pretty)
    return 0


def cmd_factory_run(args: argparse.Namespace, g: GlobalOpts) -> int:
    config = _config(g)
    policy_ids = list(args.policy_id or []) or _parse_csv(_env_or_none(ROUTER_POLICY_IDS))
    factory = _factory(g, config, policy_ids=policy_ids)
    req = factory.advance(args.environment) if args.step else factory.run(args.environment)
    _print_json(req.to_dict(), pretty=g.pretty)
    return 0


def cmd_factory_status(args: argparse.Namespace, g: GlobalOpts) -> int:
    config = _config(g)
    req = _factory(g, config).status(args.environment)
    if req is None:
        raise OpError(f"no account factory request for {args.environment!r}")
    _print_json(req.to_dict(), pretty=g.pretty)
    return 0


def cmd_factory_export(args: argparse.Namespace, g: GlobalOpts) -> int:
    config = _config(g)
    factory = _factory(g, config)
    requests = [r for r in (factory.status(name) for name in ENVIRONMENT_ORDER) if r is not None]
    doc = accounts_document(config, requests)
    if args.output:
        path = Path(args.output)
        _write_secure_json(path=path, obj=doc)
        if not g.quiet:
            _eprint(f"wrote {path}")
    _print_json(doc, pretty=g.pretty)
    return 0


def cmd_state_get(args: argparse.Namespace, g: GlobalOpts) -> int:
    rec = _state_store(g).get(args.key)
    if rec is None:
        raise OpError(f"no state record {args.key!r}")
    _print_json(
        {"key": rec.key, "version": rec.version, "updatedAt": rec.updated_at, "value": rec.value},
        pretty=g.pretty,
    )
    return 0


def cmd_state_put(args: argparse.Namespace, g: GlobalOpts) -> int:
    value = _load_json_object(raw=args.value, label="--value")
    rec = _state_store(g).put(args.key, value, expected_version=int(args.expected_version))
    _print_json({"key": rec.key, "version": rec.version, "updatedAt": rec.updated_at}, pretty=g.pretty)
    return 0


# Typer surface


@envs_app.command("list")
def envs_list(ctx: typer.Context) -> None:
    """List registered environments."""
    _invoke(ctx, cmd_envs_list)


@envs_app.command("show")
def envs_show(ctx: typer.Context, environment: str = typer.Argument(..., help="dev, staging or prod")) -> None:
    """Show one environment with its backend names."""
    _invoke(ctx, cmd_envs_show, environment=environment)


@app.command("trust-policy")
def trust_policy(ctx: typer.Context, environment: str = typer.Argument(...)) -> None:
    """Print the role trust policy and deployment policy for an environment."""
    _invoke(ctx, cmd_trust_policy, environment=environment)


@app.command("plan")
def plan(ctx: typer.Context, environment: str = typer.Argument(...)) -> None:
    """Print the ordered infrastructure module plan for an environment."""
    _invoke(ctx, cmd_plan, environment=environment)


@app.command("route")
def route_cmd(
    ctx: typer.Context,
    environment: str = typer.Option(..., "--environment", "-e"),
    deploy_infrastructure: str = typer.Option("false", "--deploy-infrastructure"),
    deploy_website: str = typer.Option("false", "--deploy-website"),
    run_id: str | None = typer.Option(None, "--run-id", help="Defaults to GITHUB_RUN_ID"),
) -> None:
    """Resolve a workflow run; writes step outputs when GITHUB_OUTPUT is set."""
    _invoke(
        ctx,
        cmd_route,
        environment=environment,
        deploy_infrastructure=deploy_infrastructure,
        deploy_website=deploy_website,
        run_id=run_id,
    )


@app.command("exchange")
def exchange_cmd(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    token: str | None = typer.Option(None, "--token", help="OIDC token (env: ROUTER_OIDC_TOKEN)"),
    token_file: str | None = typer.Option(None, "--token-file"),
    from_github: bool = typer.Option(False, "--from-github", help="Request a token from the Actions runtime"),
    broker: str | None = typer.Option(None, "--broker", help=f"Broker base URL (env: {ROUTER_BROKER_ENDPOINT})"),
    fmt: str = typer.Option("json", "--format", help="json | credential-process | env"),
    run_id: str | None = typer.Option(None, "--run-id"),
    export_github_env: bool = typer.Option(False, "--export-github-env", help="Mask and append credentials to GITHUB_ENV"),
) -> None:
    """Exchange an OIDC token for one environment's deployment credentials."""
    _invoke(
        ctx,
        cmd_exchange,
        environment=environment,
        token=token,
        token_file=token_file,
        from_github=from_github,
        broker=broker,
        format=fmt,
        run_id=run_id,
        export_github_env=export_github_env,
    )


@factory_app.command("request")
def factory_request(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    email: str = typer.Option(..., "--email", help="Root email for the new account"),
    account_name: str | None = typer.Option(None, "--account-name"),
) -> None:
    """Record a new account request in state Requested."""
    _invoke(ctx, cmd_factory_request, environment=environment, email=email, account_name=account_name)


@factory_app.command("run")
def factory_run(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    policy_id: list[str] | None = typer.Option(None, "--policy-id", help=f"SCP id to attach (env: {ROUTER_POLICY_IDS})"),
    step: bool = typer.Option(False, "--step", help="Advance a single state only"),
) -> None:
    """Advance an account request until Ready, resuming from its stored state."""
    _invoke(ctx, cmd_factory_run, environment=environment, policy_id=policy_id, step=step)


@factory_app.command("status")
def factory_status(ctx: typer.Context, environment: str = typer.Argument(...)) -> None:
    _invoke(ctx, cmd_factory_status, environment=environment)


@factory_app.command("export")
def factory_export(
    ctx: typer.Context,
    output: str | None = typer.Option(None, "--output", "-o", help="Write accounts.json here"),
) -> None:
    """Emit the accounts.json bootstrap document."""
    _invoke(ctx, cmd_factory_export, output=output)


@state_app.command("get")
def state_get(ctx: typer.Context, key: str = typer.Argument(...)) -> None:
    _invoke(ctx, cmd_state_get, key=key)


@state_app.command("put")
def state_put(
    ctx: typer.Context,
    key: str = typer.Argument(...),
    value: str = typer.Option(..., "--value", help="JSON object"),
    expected_version: int = typer.Option(..., "--expected-version", help="0 creates; otherwise compare-and-swap"),
) -> None:
    _invoke(ctx, cmd_state_put, key=key, value=value, expected_version=expected_version)


def main(argv: list[str] | None = None) -> int:
    prog_name = "access-router"
    argv = list(sys.argv[1:] if argv is None else argv)
    _bootstrap_env()
    try:
        result = app(args=argv, prog_name=prog_name, standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        if isinstance(e, click.UsageError):
            _render_usage_error_with_help(message=e.format_message(), ctx=getattr(e, "ctx", None))
            return int(e.exit_code)
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), fallback_help=_root_help_text(prog_name=prog_name))
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
