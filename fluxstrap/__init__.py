"""
fluxstrap - idempotent GitOps bootstrap.

Installs Flux controllers on a cluster and links them to a Git repository:
- providers: Git hosting backends (GitHub, GitLab, Gitea, plain Git server)
- credentials: cluster deploy credential provisioning
- sync: diff-and-commit of generated manifests
- reconciler: the bootstrap state machine
"""
__version__ = "0.1.0"
