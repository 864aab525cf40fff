"""Application Load Balancer, listener and target group management."""
import logging
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from ecs_deployer.aws.utils import error_code, get_ec2_client, get_elbv2_client, to_elb_tags

logger = logging.getLogger(__name__)

TARGET_GROUP_MISSING = ('TargetGroupNotFound', 'TargetGroupNotFoundException')
LOAD_BALANCER_MISSING = ('LoadBalancerNotFound', 'LoadBalancerNotFoundException')
LISTENER_MISSING = ('ListenerNotFound', 'ListenerNotFoundException')


class LoadBalancerManager:
    """Manager for the ALB chain in front of the service: target group, load balancer, listener."""

    def __init__(self, elbv2_client=None, ec2_client=None):
        self.elbv2_client = elbv2_client or get_elbv2_client()
        self.ec2_client = ec2_client or get_ec2_client()

    def resolve_vpc(self, subnet_id: str) -> str:
        """VPC id of a subnet."""
        response = self.ec2_client.describe_subnets(SubnetIds=[subnet_id])
        return response['Subnets'][0]['VpcId']

    # Target groups

    def find_target_group(self, name: str = None, arn: str = None) -> Optional[Dict[str, Any]]:
        try:
            if arn:
                response = self.elbv2_client.describe_target_groups(TargetGroupArns=[arn])
            else:
                response = self.elbv2_client.describe_target_groups(Names=[name])
        except ClientError as e:
            if error_code(e) in TARGET_GROUP_MISSING:
                return None
            raise
        groups = response.get('TargetGroups', [])
        return groups[0] if groups else None

    def _health_check_kwargs(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'HealthCheckProtocol': 'HTTP',
            'HealthCheckPath': params['health_check_path'],
            'HealthCheckIntervalSeconds': params['health_check_interval'],
            'HealthCheckTimeoutSeconds': params['health_check_timeout'],
            'HealthyThresholdCount': params['healthy_threshold'],
            'UnhealthyThresholdCount': params['unhealthy_threshold'],
            'Matcher': {'HttpCode': params['matcher']},
        }

    def create_target_group(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Create the ip target group; an existing one with the same name is reused."""
        name = params['name']
        vpc_id = params.get('vpc_id') or self.resolve_vpc(params['subnet_id'])
        kwargs = {
            'Name': name,
            'Protocol': params.get('protocol', 'HTTP'),
            'Port': params['port'],
            'VpcId': vpc_id,
            'TargetType': params.get('target_type', 'ip'),
        }
        kwargs.update(self._health_check_kwargs(params))
        if params.get('tags'):
            kwargs['Tags'] = to_elb_tags(params['tags'])

        try:
            response = self.elbv2_client.create_target_group(**kwargs)
            target_group = response['TargetGroups'][0]
            logger.info(f"Created target group: {name}")
        except ClientError as e:
            if error_code(e) != 'DuplicateTargetGroupName':
                logger.error(f"Failed to create target group {name}: {e}")
                raise
            target_group = self.find_target_group(name=name)
            logger.info(f"Using existing target group: {name}")
        return {'arn': target_group['TargetGroupArn'], 'name': name}

    def update_target_group(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.elbv2_client.modify_target_group(
            TargetGroupArn=params['arn'],
            **self._health_check_kwargs(params)
        )
        logger.info(f"Updated target group health check: {params['name']}")
        return {'arn': params['arn'], 'name': params['name']}

    def delete_target_group(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            self.elbv2_client.delete_target_group(TargetGroupArn=params['arn'])
            logger.info(f"Deleted target group: {params.get('name', params['arn'])}")
        except ClientError as e:
            if error_code(e) not in TARGET_GROUP_MISSING:
                raise
        return {}

    def describe_target_health(self, target_group_arn: str) -> Tuple[int, int]:
        """Count healthy and unhealthy registered targets."""
        response = self.elbv2_client.describe_target_health(TargetGroupArn=target_group_arn)
        healthy = 0
        unhealthy = 0
        for description in response.get('TargetHealthDescriptions', []):
            state = description.get('TargetHealth', {}).get('State')
            if state == 'healthy':
                healthy += 1
            elif state in ('unhealthy', 'unavailable'):
                unhealthy += 1
        return healthy, unhealthy

    # Load balancers

    def find_load_balancer(self, name: str = None, arn: str = None) -> Optional[Dict[str, Any]]:
        try:
            if arn:
                response = self.elbv2_client.describe_load_balancers(LoadBalancerArns=[arn])
            else:
                response = self.elbv2_client.describe_load_balancers(Names=[name])
        except ClientError as e:
            if error_code(e) in LOAD_BALANCER_MISSING:
                return None
            raise
        balancers = response.get('LoadBalancers', [])
        return balancers[0] if balancers else None

    def create_load_balancer(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Create the internet-facing (or internal) application load balancer."""
        name = params['name']
        kwargs = {
            'Name': name,
            'Subnets': list(params['subnets']),
            'Scheme': params.get('scheme', 'internet-facing'),
            'Type': 'application',
            'IpAddressType': 'ipv4',
        }
        if params.get('tags'):
            kwargs['Tags'] = to_elb_tags(params['tags'])
        if params.get('security_groups'):
            kwargs['SecurityGroups'] = list(params['security_groups'])

        try:
            response = self.elbv2_client.create_load_balancer(**kwargs)
            balancer = response['LoadBalancers'][0]
            logger.info(f"Created load balancer: {name}")
        except ClientError as e:
            if error_code(e) != 'DuplicateLoadBalancerName':
                logger.error(f"Failed to create load balancer {name}: {e}")
                raise
            balancer = self.find_load_balancer(name=name)
            logger.info(f"Using existing load balancer: {name}")
        return {'arn': balancer['LoadBalancerArn'], 'name': name, 'dns_name': balancer.get('DNSName')}

    def update_load_balancer(self, params: Dict[str, Any]) -> Dict[str, Any]:
        arn = params['arn']
        self.elbv2_client.set_subnets(LoadBalancerArn=arn, Subnets=list(params['subnets']))
        if params.get('security_groups'):
            self.elbv2_client.set_security_groups(
                LoadBalancerArn=arn,
                SecurityGroups=list(params['security_groups'])
            )
        logger.info(f"Updated load balancer networking: {params['name']}")
        balancer = self.find_load_balancer(arn=arn) or {}
        return {'arn': arn, 'name': params['name'], 'dns_name': balancer.get('DNSName')}

    def delete_load_balancer(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            self.elbv2_client.delete_load_balancer(LoadBalancerArn=params['arn'])
            logger.info(f"Deleted load balancer: {params.get('name', params['arn'])}")
        except ClientError as e:
            if error_code(e) not in LOAD_BALANCER_MISSING:
                raise
        return {}

    @staticmethod
    def load_balancer_subnets(balancer: Dict[str, Any]) -> List[str]:
        return [zone['SubnetId'] for zone in balancer.get('AvailabilityZones', []) if zone.get('SubnetId')]

    # Listeners

    def list_listeners(self, load_balancer_arn: str) -> List[Dict[str, Any]]:
        try:
            response = self.elbv2_client.describe_listeners(LoadBalancerArn=load_balancer_arn)
        except ClientError as e:
            if error_code(e) in LOAD_BALANCER_MISSING + LISTENER_MISSING:
                return []
            raise
        return response.get('Listeners', [])

    def find_listener(self, load_balancer_arn: str, port: int) -> Optional[Dict[str, Any]]:
        for listener in self.list_listeners(load_balancer_arn):
            if listener.get('Port') == port:
                return listener
        return None

    @staticmethod
    def forward_target_group(listener: Dict[str, Any]) -> Optional[str]:
        for action in listener.get('DefaultActions', []):
            if action.get('Type') == 'forward' and action.get('TargetGroupArn'):
                return action['TargetGroupArn']
        return None

    def _listener_kwargs(self, params: Dict[str, Any]) -> Dict[str, Any]:
        kwargs = {
            'Protocol': params.get('protocol', 'HTTP'),
            'Port': params['port'],
            'DefaultActions': [{'Type': 'forward', 'TargetGroupArn': params['target_group_arn']}],
        }
        if params.get('certificate_arn'):
            kwargs['Certificates'] = [{'CertificateArn': params['certificate_arn']}]
        return kwargs

    def create_listener(self, params: Dict[str, Any]) -> Dict[str, Any]:
        load_balancer_arn = params['load_balancer_arn']
        existing = self.find_listener(load_balancer_arn, params['port'])
        if existing:
            logger.info(f"Listener on port {params['port']} already exists")
            update = dict(params)
            update['arn'] = existing['ListenerArn']
            return self.update_listener(update)

        try:
            response = self.elbv2_client.create_listener(
                LoadBalancerArn=load_balancer_arn,
                **self._listener_kwargs(params)
            )
        except ClientError as e:
            logger.error(f"Failed to create listener on port {params['port']}: {e}")
            raise
        listener_arn = response['Listeners'][0]['ListenerArn']
        logger.info(f"Created listener on port {params['port']}")
        return {'arn': listener_arn}

    def update_listener(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.elbv2_client.modify_listener(
            ListenerArn=params['arn'],
            **self._listener_kwargs(params)
        )
        logger.info(f"Updated listener on port {params['port']}")
        return {'arn': params['arn']}

    def delete_listener(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            self.elbv2_client.delete_listener(ListenerArn=params['arn'])
            logger.info(f"Deleted listener: {params['arn']}")
        except ClientError as e:
            if error_code(e) not in LISTENER_MISSING:
                raise
        return {}
