"""spine-devops command line: ``build``, ``deploy`` and ``migrate``."""
