"""
stackgraph: declare AWS resources as a graph, plan them in dependency order
and realize them through Pulumi.

Submodules are imported explicitly (``from stackgraph.composite import
Stack``) so that the Lambda alert handler can ship without the Pulumi SDK.
"""

__version__ = "0.1.0"
