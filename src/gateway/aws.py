"""boto3-backed Cloud Gateway for EC2 and IAM.

Each kind maps onto one or two EC2/IAM calls. Describe results are
normalized into plain dicts so the discoverer never sees raw API shapes:

    network                  id, tags, cidr, is_default
    subnetwork               id, tags, network_id, cidr
    internet_gateway         id, tags, attachments (network ids)
    elastic_address          id (allocation id), tags, public_ip, association_id
    nat_gateway              id, tags, network_id, subnetwork_id, state, allocation_ids
    route_table              id, tags, network_id, is_main, routes, associations
    security_group           id, tags, network_id, group_name
    network_acl              id, tags, network_id, is_default, associations
    identity_role            id (role name), tags, arn
    instance_profile         id (profile name), tags, roles
    key_pair                 id (key pair id), tags, key_name
    instance                 id, tags, state, subnetwork_id, public_ip, private_ip
    image                    id, name, creation_date
"""

import json
import logging
import time
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from common import wait_until
from gateway.base import GatewayError, NotFoundError, ResourceKind as K

logger = logging.getLogger(__name__)

# ClientError codes that mean "the object is not there"
NOT_FOUND_CODES = frozenset({
    'NoSuchEntity',
    'Gateway.NotAttached',
    'NatGatewayNotFound',
})

# EC2 TagSpecifications resource types per kind
EC2_RESOURCE_TYPES = {
    K.NETWORK: 'vpc',
    K.SUBNETWORK: 'subnet',
    K.INTERNET_GATEWAY: 'internet-gateway',
    K.ELASTIC_ADDRESS: 'elastic-ip',
    K.NAT_GATEWAY: 'natgateway',
    K.ROUTE_TABLE: 'route-table',
    K.SECURITY_GROUP: 'security-group',
    K.NETWORK_ACL: 'network-acl',
    K.KEY_PAIR: 'key-pair',
    K.INSTANCE: 'instance',
}

EC2_TRUST_POLICY = {
    'Version': '2012-10-17',
    'Statement': [
        {
            'Effect': 'Allow',
            'Principal': {'Service': 'ec2.amazonaws.com'},
            'Action': 'sts:AssumeRole',
        }
    ],
}

# Freshly created instance profiles take a few seconds to become usable
PROFILE_PROPAGATION_ATTEMPTS = 10
PROFILE_PROPAGATION_INTERVAL = 6


def is_not_found(error: ClientError) -> bool:
    """Check if a ClientError means the object does not exist."""
    code = error.response.get('Error', {}).get('Code', '')
    return code in NOT_FOUND_CODES or code.endswith('NotFound')


def _tags_to_dict(tags: Optional[list]) -> dict[str, str]:
    return {t['Key']: t['Value'] for t in tags or []}


def _tags_to_list(tags: Optional[dict]) -> list[dict]:
    return [{'Key': k, 'Value': v} for k, v in (tags or {}).items()]


def _as_list(value: Any) -> list:
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value]
    return [str(value)]


class AwsGateway:
    """CloudGateway implementation over boto3 EC2 and IAM clients."""

    def __init__(self, region: str, poll_interval: int = 15, session=None,
                 sleep: Callable[[float], None] = time.sleep):
        self.region = region
        self.poll_interval = poll_interval
        self._sleep = sleep
        session = session or boto3.session.Session(region_name=region)
        self.ec2 = session.client('ec2', region_name=region)
        self.iam = session.client('iam', region_name=region)

    # ------------------------------------------------------------------
    # Call wrapper
    # ------------------------------------------------------------------

    def _call(self, client, operation: str, **kwargs) -> dict:
        """Invoke a client operation, translating botocore errors."""
        logger.debug(f"{operation}({kwargs})")
        try:
            return getattr(client, operation)(**kwargs)
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', '')
            message = e.response.get('Error', {}).get('Message', str(e))
            if is_not_found(e):
                raise NotFoundError(f"{operation}: {code}: {message}", code=code) from e
            raise GatewayError(f"{operation}: {code}: {message}", code=code) from e
        except BotoCoreError as e:
            raise GatewayError(f"{operation}: {e}") from e

    def _tag_spec(self, kind: str, spec: dict) -> list[dict]:
        tags = spec.get('tags')
        if not tags:
            return []
        return [{'ResourceType': EC2_RESOURCE_TYPES[kind], 'Tags': _tags_to_list(tags)}]

    @staticmethod
    def _filters(filters: dict) -> list[dict]:
        return [{'Name': k, 'Values': _as_list(v)} for k, v in filters.items()]

    def _paginate(self, operation: str, key: str, **kwargs) -> list[dict]:
        try:
            paginator = self.ec2.get_paginator(operation)
            items: list[dict] = []
            for page in paginator.paginate(**kwargs):
                items.extend(page.get(key, []))
            return items
        except (ClientError, BotoCoreError) as e:
            raise GatewayError(f"{operation}: {e}") from e

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def create(self, kind: str, spec: dict) -> dict:
        handler = getattr(self, f'_create_{kind}', None)
        if handler is None:
            raise GatewayError(f"Cannot create resources of kind '{kind}'")
        result: dict = handler(spec)
        logger.debug(f"Created {kind}: {result['id']}")
        return result

    def _create_network(self, spec: dict) -> dict:
        resp = self._call(self.ec2, 'create_vpc', CidrBlock=spec['cidr'],
                          TagSpecifications=self._tag_spec(K.NETWORK, spec))
        vpc_id = resp['Vpc']['VpcId']
        # Hostnames and resolution are separate attributes, one per call
        self._call(self.ec2, 'modify_vpc_attribute', VpcId=vpc_id,
                   EnableDnsHostnames={'Value': True})
        self._call(self.ec2, 'modify_vpc_attribute', VpcId=vpc_id,
                   EnableDnsSupport={'Value': True})
        return {'id': vpc_id, 'cidr': spec['cidr']}

    def _create_subnetwork(self, spec: dict) -> dict:
        resp = self._call(self.ec2, 'create_subnet',
                          VpcId=spec['network_id'],
                          CidrBlock=spec['cidr'],
                          AvailabilityZone=spec['availability_zone'],
                          TagSpecifications=self._tag_spec(K.SUBNETWORK, spec))
        subnet_id = resp['Subnet']['SubnetId']
        if spec.get('map_public_ip'):
            self._call(self.ec2, 'modify_subnet_attribute', SubnetId=subnet_id,
                       MapPublicIpOnLaunch={'Value': True})
        return {'id': subnet_id, 'cidr': spec['cidr'], 'network_id': spec['network_id']}

    def _create_internet_gateway(self, spec: dict) -> dict:
        resp = self._call(self.ec2, 'create_internet_gateway',
                          TagSpecifications=self._tag_spec(K.INTERNET_GATEWAY, spec))
        return {'id': resp['InternetGateway']['InternetGatewayId']}

    def _create_internet_gateway_attachment(self, spec: dict) -> dict:
        self._call(self.ec2, 'attach_internet_gateway',
                   InternetGatewayId=spec['internet_gateway_id'],
                   VpcId=spec['network_id'])
        return {
            'id': f"{spec['internet_gateway_id']}/{spec['network_id']}",
            'internet_gateway_id': spec['internet_gateway_id'],
            'network_id': spec['network_id'],
        }

    def _create_elastic_address(self, spec: dict) -> dict:
        resp = self._call(self.ec2, 'allocate_address', Domain='vpc',
                          TagSpecifications=self._tag_spec(K.ELASTIC_ADDRESS, spec))
        return {'id': resp['AllocationId'], 'public_ip': resp.get('PublicIp')}

    def _create_nat_gateway(self, spec: dict) -> dict:
        resp = self._call(self.ec2, 'create_nat_gateway',
                          SubnetId=spec['subnetwork_id'],
                          AllocationId=spec['allocation_id'],
                          TagSpecifications=self._tag_spec(K.NAT_GATEWAY, spec))
        return {'id': resp['NatGateway']['NatGatewayId'],
                'subnetwork_id': spec['subnetwork_id']}

    def _create_route_table(self, spec: dict) -> dict:
        resp = self._call(self.ec2, 'create_route_table', VpcId=spec['network_id'],
                          TagSpecifications=self._tag_spec(K.ROUTE_TABLE, spec))
        return {'id': resp['RouteTable']['RouteTableId'], 'network_id': spec['network_id']}

    def _create_route(self, spec: dict) -> dict:
        kwargs = {
            'RouteTableId': spec['route_table_id'],
            'DestinationCidrBlock': spec['destination'],
        }
        if spec.get('nat_gateway_id'):
            kwargs['NatGatewayId'] = spec['nat_gateway_id']
        else:
            kwargs['GatewayId'] = spec['gateway_id']
        self._call(self.ec2, 'create_route', **kwargs)
        return {
            'id': f"{spec['route_table_id']}/{spec['destination']}",
            'route_table_id': spec['route_table_id'],
            'destination': spec['destination'],
        }

    def _create_route_table_association(self, spec: dict) -> dict:
        resp = self._call(self.ec2, 'associate_route_table',
                          RouteTableId=spec['route_table_id'],
                          SubnetId=spec['subnetwork_id'])
        return {'id': resp['AssociationId'],
                'route_table_id': spec['route_table_id'],
                'subnetwork_id': spec['subnetwork_id']}

    def _create_security_group(self, spec: dict) -> dict:
        resp = self._call(self.ec2, 'create_security_group',
                          GroupName=spec['group_name'],
                          Description=spec['description'],
                          VpcId=spec['network_id'],
                          TagSpecifications=self._tag_spec(K.SECURITY_GROUP, spec))
        group_id = resp['GroupId']
        permissions = [self._ip_permission(rule) for rule in spec.get('ingress', [])]
        if permissions:
            self._call(self.ec2, 'authorize_security_group_ingress',
                       GroupId=group_id, IpPermissions=permissions)
        return {'id': group_id, 'group_name': spec['group_name']}

    @staticmethod
    def _ip_permission(rule: dict) -> dict:
        permission: dict[str, Any] = {
            'IpProtocol': rule.get('protocol', 'tcp'),
            'FromPort': rule['port'],
            'ToPort': rule['port'],
        }
        if rule.get('source_group_id'):
            permission['UserIdGroupPairs'] = [{'GroupId': rule['source_group_id']}]
        else:
            permission['IpRanges'] = [{'CidrIp': rule['cidr']}]
        return permission

    def _create_network_acl(self, spec: dict) -> dict:
        resp = self._call(self.ec2, 'create_network_acl', VpcId=spec['network_id'],
                          TagSpecifications=self._tag_spec(K.NETWORK_ACL, spec))
        acl_id = resp['NetworkAcl']['NetworkAclId']
        for entry in spec.get('entries', []):
            self._call(self.ec2, 'create_network_acl_entry',
                       NetworkAclId=acl_id,
                       RuleNumber=entry['rule_number'],
                       Protocol='6',  # tcp
                       RuleAction='allow',
                       Egress=entry['egress'],
                       CidrBlock=entry['cidr'],
                       PortRange={'From': entry['from_port'], 'To': entry['to_port']})
        return {'id': acl_id, 'network_id': spec['network_id']}

    def _create_network_acl_association(self, spec: dict) -> dict:
        current = self._acl_association_for_subnet(spec['subnetwork_id'])
        if current is None:
            raise GatewayError(
                f"No network ACL association found for subnet {spec['subnetwork_id']}")
        resp = self._call(self.ec2, 'replace_network_acl_association',
                          AssociationId=current['association_id'],
                          NetworkAclId=spec['network_acl_id'])
        return {'id': resp['NewAssociationId'],
                'network_acl_id': spec['network_acl_id'],
                'network_id': spec['network_id'],
                'subnetwork_id': spec['subnetwork_id']}

    def _create_identity_role(self, spec: dict) -> dict:
        resp = self._call(self.iam, 'create_role',
                          RoleName=spec['role_name'],
                          AssumeRolePolicyDocument=json.dumps(EC2_TRUST_POLICY),
                          Description=spec.get('description', ''),
                          Tags=_tags_to_list(spec.get('tags')))
        for arn in spec.get('policy_arns', []):
            self._call(self.iam, 'attach_role_policy',
                       RoleName=spec['role_name'], PolicyArn=arn)
        return {'id': spec['role_name'], 'arn': resp['Role']['Arn']}

    def _create_instance_profile(self, spec: dict) -> dict:
        resp = self._call(self.iam, 'create_instance_profile',
                          InstanceProfileName=spec['profile_name'],
                          Tags=_tags_to_list(spec.get('tags')))
        self._call(self.iam, 'add_role_to_instance_profile',
                   InstanceProfileName=spec['profile_name'],
                   RoleName=spec['role_name'])
        return {'id': spec['profile_name'], 'arn': resp['InstanceProfile']['Arn'],
                'roles': [spec['role_name']]}

    def _create_key_pair(self, spec: dict) -> dict:
        resp = self._call(self.ec2, 'create_key_pair', KeyName=spec['key_name'],
                          TagSpecifications=self._tag_spec(K.KEY_PAIR, spec))
        return {'id': resp['KeyPairId'], 'key_name': resp['KeyName'],
                'key_material': resp['KeyMaterial']}

    def _create_instance(self, spec: dict) -> dict:
        kwargs: dict[str, Any] = {
            'ImageId': spec['image_id'],
            'InstanceType': spec['instance_type'],
            'KeyName': spec['key_name'],
            'MinCount': 1,
            'MaxCount': 1,
            'IamInstanceProfile': {'Name': spec['instance_profile_name']},
            'NetworkInterfaces': [{
                'DeviceIndex': 0,
                'SubnetId': spec['subnetwork_id'],
                'Groups': spec['security_group_ids'],
                'AssociatePublicIpAddress': bool(spec.get('associate_public_ip')),
            }],
            'TagSpecifications': self._tag_spec(K.INSTANCE, spec),
        }
        if spec.get('user_data'):
            kwargs['UserData'] = spec['user_data']

        for attempt in range(1, PROFILE_PROPAGATION_ATTEMPTS + 1):
            try:
                resp = self._call(self.ec2, 'run_instances', **kwargs)
                break
            except GatewayError as e:
                # IAM is eventually consistent; a new profile may not be visible yet
                if (e.code != 'InvalidParameterValue' or 'iamInstanceProfile' not in str(e)
                        or attempt == PROFILE_PROPAGATION_ATTEMPTS):
                    raise
                logger.debug(f"Instance profile not visible yet (attempt {attempt}), retrying...")
                self._sleep(PROFILE_PROPAGATION_INTERVAL)

        instance = resp['Instances'][0]
        return {'id': instance['InstanceId'],
                'private_ip': instance.get('PrivateIpAddress'),
                'subnetwork_id': spec['subnetwork_id']}

    # ------------------------------------------------------------------
    # describe
    # ------------------------------------------------------------------

    def describe(self, kind: str, filters: dict) -> list[dict]:
        handler = getattr(self, f'_describe_{kind}', None)
        if handler is None:
            raise GatewayError(f"Cannot describe resources of kind '{kind}'")
        records: list[dict] = handler(dict(filters))
        return records

    def _describe_network(self, filters: dict) -> list[dict]:
        vpcs = self._paginate('describe_vpcs', 'Vpcs', Filters=self._filters(filters))
        return [{
            'id': v['VpcId'],
            'tags': _tags_to_dict(v.get('Tags')),
            'cidr': v.get('CidrBlock'),
            'is_default': v.get('IsDefault', False),
        } for v in vpcs]

    def _describe_subnetwork(self, filters: dict) -> list[dict]:
        subnets = self._paginate('describe_subnets', 'Subnets', Filters=self._filters(filters))
        return [{
            'id': s['SubnetId'],
            'tags': _tags_to_dict(s.get('Tags')),
            'network_id': s.get('VpcId'),
            'cidr': s.get('CidrBlock'),
        } for s in subnets]

    def _describe_internet_gateway(self, filters: dict) -> list[dict]:
        igws = self._paginate('describe_internet_gateways', 'InternetGateways',
                              Filters=self._filters(filters))
        return [{
            'id': g['InternetGatewayId'],
            'tags': _tags_to_dict(g.get('Tags')),
            'attachments': [a['VpcId'] for a in g.get('Attachments', [])
                            if a.get('State') in ('attached', 'available', 'attaching')],
        } for g in igws]

    def _describe_elastic_address(self, filters: dict) -> list[dict]:
        resp = self._call(self.ec2, 'describe_addresses', Filters=self._filters(filters))
        return [{
            'id': a['AllocationId'],
            'tags': _tags_to_dict(a.get('Tags')),
            'public_ip': a.get('PublicIp'),
            'association_id': a.get('AssociationId'),
        } for a in resp.get('Addresses', [])]

    def _describe_nat_gateway(self, filters: dict) -> list[dict]:
        # describe_nat_gateways spells its parameter 'Filter', not 'Filters'
        nats = self._paginate('describe_nat_gateways', 'NatGateways',
                              Filter=self._filters(filters))
        return [{
            'id': n['NatGatewayId'],
            'tags': _tags_to_dict(n.get('Tags')),
            'network_id': n.get('VpcId'),
            'subnetwork_id': n.get('SubnetId'),
            'state': n.get('State'),
            'allocation_ids': [a['AllocationId'] for a in n.get('NatGatewayAddresses', [])
                               if a.get('AllocationId')],
        } for n in nats]

    def _describe_route_table(self, filters: dict) -> list[dict]:
        tables = self._paginate('describe_route_tables', 'RouteTables',
                                Filters=self._filters(filters))
        records = []
        for t in tables:
            associations = [{
                'id': a['RouteTableAssociationId'],
                'subnetwork_id': a.get('SubnetId'),
                'main': a.get('Main', False),
            } for a in t.get('Associations', [])]
            records.append({
                'id': t['RouteTableId'],
                'tags': _tags_to_dict(t.get('Tags')),
                'network_id': t.get('VpcId'),
                'is_main': any(a['main'] for a in associations),
                'routes': [{
                    'destination': r.get('DestinationCidrBlock'),
                    'gateway_id': r.get('GatewayId'),
                    'nat_gateway_id': r.get('NatGatewayId'),
                    'origin': r.get('Origin'),
                } for r in t.get('Routes', [])],
                'associations': associations,
            })
        return records

    def _describe_security_group(self, filters: dict) -> list[dict]:
        groups = self._paginate('describe_security_groups', 'SecurityGroups',
                                Filters=self._filters(filters))
        return [{
            'id': g['GroupId'],
            'tags': _tags_to_dict(g.get('Tags')),
            'network_id': g.get('VpcId'),
            'group_name': g.get('GroupName'),
        } for g in groups]

    def _describe_network_acl(self, filters: dict) -> list[dict]:
        acls = self._paginate('describe_network_acls', 'NetworkAcls',
                              Filters=self._filters(filters))
        return [{
            'id': a['NetworkAclId'],
            'tags': _tags_to_dict(a.get('Tags')),
            'network_id': a.get('VpcId'),
            'is_default': a.get('IsDefault', False),
            'associations': [{
                'id': assoc['NetworkAclAssociationId'],
                'subnetwork_id': assoc.get('SubnetId'),
            } for assoc in a.get('Associations', [])],
        } for a in acls]

    def _describe_identity_role(self, filters: dict) -> list[dict]:
        prefix = filters.pop('name-prefix', '')
        wanted_tags = self._tag_filters(filters)
        records = []
        paginator = self.iam.get_paginator('list_roles')
        try:
            for page in paginator.paginate():
                for role in page.get('Roles', []):
                    if not role['RoleName'].startswith(prefix):
                        continue
                    try:
                        detail = self._call(self.iam, 'get_role', RoleName=role['RoleName'])['Role']
                    except NotFoundError:
                        continue
                    tags = _tags_to_dict(detail.get('Tags'))
                    if all(tags.get(k) == v for k, v in wanted_tags.items()):
                        records.append({'id': role['RoleName'], 'tags': tags,
                                        'arn': role['Arn']})
        except (ClientError, BotoCoreError) as e:
            raise GatewayError(f"list_roles: {e}") from e
        return records

    def _describe_instance_profile(self, filters: dict) -> list[dict]:
        prefix = filters.pop('name-prefix', '')
        wanted_tags = self._tag_filters(filters)
        records = []
        paginator = self.iam.get_paginator('list_instance_profiles')
        try:
            for page in paginator.paginate():
                for profile in page.get('InstanceProfiles', []):
                    name = profile['InstanceProfileName']
                    if not name.startswith(prefix):
                        continue
                    tags = _tags_to_dict(profile.get('Tags'))
                    if not tags and wanted_tags:
                        tag_resp = self._call(self.iam, 'list_instance_profile_tags',
                                              InstanceProfileName=name)
                        tags = _tags_to_dict(tag_resp.get('Tags'))
                    if all(tags.get(k) == v for k, v in wanted_tags.items()):
                        records.append({
                            'id': name,
                            'tags': tags,
                            'roles': [r['RoleName'] for r in profile.get('Roles', [])],
                        })
        except (ClientError, BotoCoreError) as e:
            raise GatewayError(f"list_instance_profiles: {e}") from e
        return records

    @staticmethod
    def _tag_filters(filters: dict) -> dict[str, str]:
        """Extract 'tag:Key' filters as a plain Key -> Value mapping."""
        return {k[len('tag:'):]: str(v) for k, v in filters.items() if k.startswith('tag:')}

    def _describe_key_pair(self, filters: dict) -> list[dict]:
        try:
            resp = self._call(self.ec2, 'describe_key_pairs', Filters=self._filters(filters))
        except NotFoundError:
            return []
        return [{
            'id': k['KeyPairId'],
            'tags': _tags_to_dict(k.get('Tags')),
            'key_name': k.get('KeyName'),
        } for k in resp.get('KeyPairs', [])]

    def _describe_instance(self, filters: dict) -> list[dict]:
        reservations = self._paginate('describe_instances', 'Reservations',
                                      Filters=self._filters(filters))
        records = []
        for reservation in reservations:
            for i in reservation.get('Instances', []):
                records.append({
                    'id': i['InstanceId'],
                    'tags': _tags_to_dict(i.get('Tags')),
                    'state': i.get('State', {}).get('Name'),
                    'subnetwork_id': i.get('SubnetId'),
                    'public_ip': i.get('PublicIpAddress'),
                    'private_ip': i.get('PrivateIpAddress'),
                })
        return records

    def _describe_image(self, filters: dict) -> list[dict]:
        owner = filters.pop('owner', None)
        kwargs: dict[str, Any] = {'Filters': self._filters(filters)}
        if owner:
            kwargs['Owners'] = _as_list(owner)
        resp = self._call(self.ec2, 'describe_images', **kwargs)
        images = [{
            'id': img['ImageId'],
            'name': img.get('Name'),
            'creation_date': img.get('CreationDate', ''),
            'tags': _tags_to_dict(img.get('Tags')),
        } for img in resp.get('Images', [])]
        return sorted(images, key=lambda img: img['creation_date'])

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    def delete(self, kind: str, resource_id: str, attributes: dict) -> None:
        handler = getattr(self, f'_delete_{kind}', None)
        if handler is None:
            raise GatewayError(f"Cannot delete resources of kind '{kind}'")
        handler(resource_id, attributes or {})
        logger.debug(f"Deleted {kind}: {resource_id}")

    def _delete_network(self, resource_id: str, _attributes: dict) -> None:
        self._call(self.ec2, 'delete_vpc', VpcId=resource_id)

    def _delete_subnetwork(self, resource_id: str, _attributes: dict) -> None:
        self._call(self.ec2, 'delete_subnet', SubnetId=resource_id)

    def _delete_internet_gateway(self, resource_id: str, _attributes: dict) -> None:
        self._call(self.ec2, 'delete_internet_gateway', InternetGatewayId=resource_id)

    def _delete_internet_gateway_attachment(self, _resource_id: str, attributes: dict) -> None:
        self._call(self.ec2, 'detach_internet_gateway',
                   InternetGatewayId=attributes['internet_gateway_id'],
                   VpcId=attributes['network_id'])

    def _delete_elastic_address(self, resource_id: str, _attributes: dict) -> None:
        self._call(self.ec2, 'release_address', AllocationId=resource_id)

    def _delete_nat_gateway(self, resource_id: str, _attributes: dict) -> None:
        state = self._nat_gateway_state(resource_id)
        if state in (None, 'deleted'):
            raise NotFoundError(f"NAT gateway {resource_id} does not exist")
        self._call(self.ec2, 'delete_nat_gateway', NatGatewayId=resource_id)

    def _delete_route_table(self, resource_id: str, _attributes: dict) -> None:
        self._call(self.ec2, 'delete_route_table', RouteTableId=resource_id)

    def _delete_route(self, _resource_id: str, attributes: dict) -> None:
        self._call(self.ec2, 'delete_route',
                   RouteTableId=attributes['route_table_id'],
                   DestinationCidrBlock=attributes['destination'])

    def _delete_route_table_association(self, resource_id: str, _attributes: dict) -> None:
        self._call(self.ec2, 'disassociate_route_table', AssociationId=resource_id)

    def _delete_security_group(self, resource_id: str, _attributes: dict) -> None:
        self._call(self.ec2, 'delete_security_group', GroupId=resource_id)

    def _delete_network_acl(self, resource_id: str, _attributes: dict) -> None:
        self._call(self.ec2, 'delete_network_acl', NetworkAclId=resource_id)

    def _delete_network_acl_association(self, _resource_id: str, attributes: dict) -> None:
        """Hand the subnet back to the network's default ACL."""
        current = self._acl_association_for_subnet(attributes['subnetwork_id'])
        if current is None or current['network_acl_id'] != attributes.get('network_acl_id'):
            raise NotFoundError(
                f"Subnet {attributes['subnetwork_id']} is not associated with "
                f"{attributes.get('network_acl_id')}")
        defaults = self._describe_network_acl({
            'vpc-id': attributes['network_id'],
            'default': 'true',
        })
        if not defaults:
            raise GatewayError(f"No default network ACL in {attributes['network_id']}")
        self._call(self.ec2, 'replace_network_acl_association',
                   AssociationId=current['association_id'],
                   NetworkAclId=defaults[0]['id'])

    def _delete_identity_role(self, resource_id: str, _attributes: dict) -> None:
        attached = self._call(self.iam, 'list_attached_role_policies', RoleName=resource_id)
        for policy in attached.get('AttachedPolicies', []):
            self._call(self.iam, 'detach_role_policy',
                       RoleName=resource_id, PolicyArn=policy['PolicyArn'])
        profiles = self._call(self.iam, 'list_instance_profiles_for_role', RoleName=resource_id)
        for profile in profiles.get('InstanceProfiles', []):
            self._call(self.iam, 'remove_role_from_instance_profile',
                       InstanceProfileName=profile['InstanceProfileName'],
                       RoleName=resource_id)
        self._call(self.iam, 'delete_role', RoleName=resource_id)

    def _delete_instance_profile(self, resource_id: str, _attributes: dict) -> None:
        profile = self._call(self.iam, 'get_instance_profile',
                             InstanceProfileName=resource_id)['InstanceProfile']
        for role in profile.get('Roles', []):
            self._call(self.iam, 'remove_role_from_instance_profile',
                       InstanceProfileName=resource_id, RoleName=role['RoleName'])
        self._call(self.iam, 'delete_instance_profile', InstanceProfileName=resource_id)

    def _delete_key_pair(self, resource_id: str, _attributes: dict) -> None:
        self._call(self.ec2, 'delete_key_pair', KeyPairId=resource_id)

    def _delete_instance(self, resource_id: str, _attributes: dict) -> None:
        if self._instance_state(resource_id) in (None, 'terminated'):
            raise NotFoundError(f"Instance {resource_id} does not exist")
        self._call(self.ec2, 'terminate_instances', InstanceIds=[resource_id])

    # ------------------------------------------------------------------
    # wait
    # ------------------------------------------------------------------

    def wait(self, kind: str, resource_id: str, target_state: str, timeout: int) -> bool:
        if kind == K.NAT_GATEWAY:
            read_state = self._nat_gateway_state
        elif kind == K.INSTANCE:
            read_state = self._instance_state
        else:
            raise GatewayError(f"Cannot wait on resources of kind '{kind}'")

        gone_states = ('deleted', 'terminated')

        def reached() -> bool:
            state = read_state(resource_id)
            if state is None:
                return target_state in gone_states
            if state == 'failed' and target_state not in gone_states:
                raise GatewayError(f"{kind} {resource_id} entered state 'failed'")
            return state == target_state

        return wait_until(
            reached,
            timeout=timeout,
            interval=self.poll_interval,
            description=f"{kind} {resource_id} to be {target_state}",
            sleep=self._sleep,
        )

    def _nat_gateway_state(self, nat_id: str) -> Optional[str]:
        try:
            resp = self._call(self.ec2, 'describe_nat_gateways', NatGatewayIds=[nat_id])
        except NotFoundError:
            return None
        nats = resp.get('NatGateways', [])
        return nats[0].get('State') if nats else None

    def _instance_state(self, instance_id: str) -> Optional[str]:
        try:
            resp = self._call(self.ec2, 'describe_instances', InstanceIds=[instance_id])
        except NotFoundError:
            return None
        for reservation in resp.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                state: Optional[str] = instance.get('State', {}).get('Name')
                return state
        return None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _acl_association_for_subnet(self, subnet_id: str) -> Optional[dict]:
        """Find the ACL association currently covering a subnet."""
        resp = self._call(self.ec2, 'describe_network_acls', Filters=[
            {'Name': 'association.subnet-id', 'Values': [subnet_id]},
        ])
        for acl in resp.get('NetworkAcls', []):
            for assoc in acl.get('Associations', []):
                if assoc.get('SubnetId') == subnet_id:
                    return {'association_id': assoc['NetworkAclAssociationId'],
                            'network_acl_id': acl['NetworkAclId']}
        return None
