"""
Fleet 'actions' module.

This module contains *actions* that modify the state of a block_chat fleet.

deploy.py prepares the nodes: it cleans the working directory, ships and
builds the sources, ships the input datasets and installs the systemd unit
and override files. Service definitions rarely change, so the unit stages
can be skipped with a partial deployment.

lifecycle.py takes the deployed fleet through a run: stop whatever is
running, reload unit definitions, start the helpers and then the daemons.

*Actions* never raise because a node failed. Faults are collected in the
FleetReport each action returns, and inspecting that report is how a caller
decides whether a run truly succeeded.
"""
