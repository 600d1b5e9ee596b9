"""
spine-devops - Convergent AWS deployment orchestration for multi-service projects.

Builds a service image, pushes it to the registry, and materializes the
runtime environment the service needs (network, storage, database, cache,
DNS, TLS, load balancer, service discovery, IAM, task definition) before
reconciling the running container service against the new revision.

- spine_devops.core: errors, logging, retry/polling, secrets, settings
- spine_devops.deploy: descriptors, provisioners, pipeline runners
- spine_devops.cli: ``spine-devops build | deploy | migrate``
"""

__version__ = "0.1.0"
