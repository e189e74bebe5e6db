"""lilroot: rootfs em camadas e supervisão de processos em proot."""

__version__ = "0.3.0"
