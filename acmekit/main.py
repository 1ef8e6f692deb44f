import asyncio
import logging
import logging.config
import sys
from pathlib import Path
from typing import Annotated, Any, List

import click
import yaml
from cryptography import x509
from pydantic import Field
from pydantic_settings import BaseSettings

from acmekit.client import AcmeClient, AcmeClientException, ChallengeSolver, DummySolver
from acmekit.models.messages import RevocationReason
from acmekit.plugin_base import PluginRegistry
from acmekit.plugins.http01_solver import HTTP01Solver, WebrootSolver
from acmekit.plugins.rfc2136_solver import RFC2136Client, RFC2136PersistClient
from acmekit.plugins.tlsalpn01_solver import TLSALPN01Solver
from acmekit.storage import AccountStorage, CertificateStorage, FileSystemStorage
from acmekit.util import KEY_TYPES, generate_private_key, load_pem_certificates

logger = logging.getLogger(__name__)

PluginRegistry.load_plugins(r"plugins")
challenge_solver_registry = PluginRegistry.get_registry(ChallengeSolver)

SolverConfig = (
    DummySolver.Config
    | HTTP01Solver.Config
    | WebrootSolver.Config
    | TLSALPN01Solver.Config
    | RFC2136Client.Config
    | RFC2136PersistClient.Config
)


class Config(BaseSettings, extra="forbid"):
    client: AcmeClient.Config
    challenge_solvers: List[Annotated[SolverConfig, Field(discriminator="type")]] = []
    storage: Path = Path(".acmekit")
    """Directory that accounts and certificates are stored in"""
    logging: Any = None


def load_config(config_file: str) -> Config:
    with open(config_file) as stream:
        config = yaml.safe_load(stream)

    return Config.model_validate(config)


def setup_logging(config: Config) -> None:
    if config.logging:
        logging.config.dictConfig(config.logging)
    else:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")


def create_client(config: Config) -> AcmeClient:
    """Builds a client with all configured challenge solvers registered.

    The account key is taken from the configured file, or loaded from the storage directory
    and generated there on first use.
    """
    storage = FileSystemStorage(config.storage)
    account_storage = AccountStorage(storage)
    client_cfg = config.client

    private_key = None
    if not client_cfg.private_key:
        private_key = account_storage.load_or_create_key(
            client_cfg.directory, client_cfg.contact.get("email"), client_cfg.key_type
        )

    client = AcmeClient(client_cfg, private_key=private_key, account_storage=account_storage)

    for solver_cfg in config.challenge_solvers:
        solver_class = challenge_solver_registry.get_plugin(solver_cfg.type)
        client.register_challenge_solver(solver_class(solver_cfg))

    return client


def _run(coro):
    try:
        return asyncio.run(coro)
    except AcmeClientException as e:
        raise click.ClickException(str(e))


@click.group()
@click.pass_context
def main(ctx):
    pass


@main.command()
def plugins():
    """Lists the available plugins and their respective config strings."""
    mapping = challenge_solver_registry.config_mapping()
    click.echo(
        f"Challenge solvers: {', '.join([f'{solver.__name__} ({config_name})' for config_name, solver in mapping.items()])}"
    )


@main.command()
@click.argument("account-key-file", type=click.Path())
@click.option(
    "--key-type",
    "-k",
    type=click.Choice(list(KEY_TYPES), case_sensitive=False),
    default="ec256",
    show_default=True,
)
def generate_account_key(account_key_file, key_type):
    """Generates an account key for the ACME client."""
    click.echo(f"Generating client key of type {key_type} at {account_key_file}.")
    generate_private_key(key_type, Path(account_key_file))


config_file_option = click.option(
    "--config-file", envvar="ACMEKIT_CONFIG_FILE", type=click.Path(exists=True), required=True
)


@main.command()
@config_file_option
@click.option("--domain", "-d", "domains", multiple=True, help="Domain to include. May be repeated.")
@click.option("--csr", "csr_file", type=click.Path(exists=True), help="Obtain a certificate for an existing CSR.")
@click.option("--timeout", type=click.FLOAT, help="Deadline in seconds for the whole issuance.")
def obtain(config_file, domains, csr_file, timeout):
    """Obtains a certificate for the given domains or CSR and stores it."""
    if bool(domains) == bool(csr_file):
        raise click.UsageError("Specify either --domain or --csr.")

    config = load_config(config_file)
    setup_logging(config)

    async def run():
        certificates = CertificateStorage(FileSystemStorage(config.storage))
        async with create_client(config) as client:
            if csr_file:
                csr = x509.load_pem_x509_csr(Path(csr_file).read_bytes())
                resource = await client.obtain_for_csr(csr, timeout=timeout)
            else:
                resource = await client.obtain(list(domains), timeout=timeout)
        certificates.save(resource)
        return resource

    resource = _run(run())
    click.echo(f"Obtained certificate for {', '.join(resource.names)}")


@main.command()
@config_file_option
@click.option("--domain", "-d", required=True, help="Main domain of the stored certificate.")
@click.option("--reuse-key", is_flag=True, help="Submit the stored CSR again instead of generating a new key.")
@click.option("--timeout", type=click.FLOAT, help="Deadline in seconds for the whole issuance.")
def renew(config_file, domain, reuse_key, timeout):
    """Renews a stored certificate."""
    config = load_config(config_file)
    setup_logging(config)

    async def run():
        certificates = CertificateStorage(FileSystemStorage(config.storage))
        try:
            current = certificates.load(domain)
        except FileNotFoundError:
            raise click.ClickException(f"No certificate stored for {domain}")

        async with create_client(config) as client:
            if reuse_key:
                resource = await client.renew(current, timeout=timeout)
            else:
                resource = await client.obtain(current.names, timeout=timeout)
        certificates.save(resource)
        return resource

    resource = _run(run())
    click.echo(f"Renewed certificate for {', '.join(resource.names)}")


@main.command()
@config_file_option
@click.argument("certificate-file", type=click.Path(exists=True))
@click.option(
    "--reason",
    type=click.Choice([reason.name for reason in RevocationReason], case_sensitive=False),
    help="Reason for the revocation.",
)
def revoke(config_file, certificate_file, reason):
    """Revokes the leaf certificate in the given PEM file."""
    config = load_config(config_file)
    setup_logging(config)

    certificate = load_pem_certificates(Path(certificate_file).read_text())[0]
    revocation_reason = RevocationReason[reason] if reason else None

    async def run():
        async with create_client(config) as client:
            return await client.certificate_revoke(certificate, revocation_reason)

    if _run(run()):
        click.echo("Certificate revoked.")
    else:
        click.echo("The server did not confirm the revocation.", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
