"""Declarative ECS Fargate deployments behind an Application Load Balancer."""

__version__ = "0.1.0"
