"""Pre-flight readiness checks for topology runs.

Validates prerequisites before any resource is touched:
- Operator address resolution (for the bastion and public ACL rules)
- Cloud credential validity
"""

import ipaddress
import logging

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from config import ConfigurationError, TopologyConfig

logger = logging.getLogger(__name__)


def resolve_operator_cidr(url: str = 'https://checkip.amazonaws.com', timeout: float = 10) -> str:
    """Look up the operator's external address as a /32 CIDR.

    Args:
        url: Service that answers with the caller's IPv4 address as text
        timeout: Request timeout in seconds

    Returns:
        CIDR string, e.g. '203.0.113.7/32'

    Raises:
        ConfigurationError: If the lookup fails or the answer is not an address
    """
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.exceptions.Timeout as e:
        raise ConfigurationError(f"Timeout looking up operator address at {url}") from e
    except requests.exceptions.RequestException as e:
        raise ConfigurationError(f"Cannot look up operator address at {url}: {e}") from e

    text = resp.text.strip()
    try:
        address = ipaddress.IPv4Address(text)
    except ValueError as e:
        raise ConfigurationError(
            f"Operator address lookup returned '{text[:60]}', not an IPv4 address"
        ) from e

    logger.debug(f"Operator address: {address}")
    return f'{address}/32'


def validate_aws_credentials(region: str, session=None) -> tuple[bool, str]:
    """Verify cloud credentials with a lightweight identity call.

    Args:
        region: Region to scope the STS client to
        session: Optional boto3 session (defaults to a new one)

    Returns:
        (success, message) tuple
    """
    session = session or boto3.session.Session(region_name=region)
    try:
        identity = session.client('sts', region_name=region).get_caller_identity()
    except ClientError as e:
        code = e.response.get('Error', {}).get('Code', '')
        return False, (
            f"AWS credentials rejected ({code}). "
            "Check AWS_PROFILE or run: aws configure"
        )
    except BotoCoreError as e:
        return False, f"Cannot authenticate to AWS: {e}"

    return True, (
        f"Authenticated as {identity.get('Arn', 'unknown')} "
        f"(account {identity.get('Account', 'unknown')})"
    )


def validate_readiness(config: TopologyConfig, check_address: bool = True, session=None) -> list[str]:
    """Run all pre-flight checks.

    Args:
        config: Topology configuration
        check_address: Also resolve the operator address (provision only);
            on success it is stored in config.operator_cidr
        session: Optional boto3 session

    Returns:
        List of error messages (empty if all checks pass)
    """
    errors = []

    success, message = validate_aws_credentials(config.region, session=session)
    if success:
        logger.debug(message)
    else:
        errors.append(message)

    if check_address and not config.operator_cidr:
        try:
            config.operator_cidr = resolve_operator_cidr(config.address_lookup_url)
        except ConfigurationError as e:
            errors.append(str(e))
        else:
            logger.debug(f"Operator address resolves to {config.operator_cidr}")

    return errors
