from ecs_deployer.spec.models import DeploymentSpec
from ecs_deployer.spec.loader import load_spec, load_spec_from_dict

__all__ = ['DeploymentSpec', 'load_spec', 'load_spec_from_dict']
