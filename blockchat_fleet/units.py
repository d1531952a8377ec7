"""
systemd integration.

The host's service manager is driven exclusively through the commands built
here. Every command is synchronous on the remote side and idempotent from
the orchestrator's point of view (stopping a stopped unit succeeds).
"""
import posixpath
import shlex

from blockchat_fleet.common import DEFAULT_FLEET_REMOTE_DIR, \
    DEFAULT_FLEET_SYSTEMD_DIR
from blockchat_fleet.execute.execute import RemoteCommand
from blockchat_fleet.scenario import ServiceInstance

# Filled in on the node from the login shell, since the remote user is
# whatever the ssh config says it is.
HOME_MARKER = "@HOME@"
USER_MARKER = "@USER@"

# Positional parameters of a privileged "sh -c" script: $1 is the login
# user's home, $2 its name. Expanded by the login shell before sudo runs.
LOGIN_ARGS = ' sh "$HOME" "$(id -un)"'

UNIT_TEMPLATE = """[Unit]
Description=block_chat daemon ({role})
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
User={user}
WorkingDirectory={remote_dir}
ExecStart={remote_dir}/target/release/daemon
Restart=no

[Install]
WantedBy=multi-user.target
"""

OVERRIDE_TEMPLATE = """[Service]
{environment}
"""


def start_command(unit: str) -> RemoteCommand:
    return RemoteCommand("systemctl start {}".format(unit), as_sudo=True)


def stop_command(unit: str) -> RemoteCommand:
    # exit status 5: unit not loaded, i.e. never installed on this node
    return RemoteCommand(
        "sh -c 'systemctl stop {} || test $? -eq 5'".format(unit),
        as_sudo=True)


def reload_command() -> RemoteCommand:
    return RemoteCommand("systemctl daemon-reload", as_sudo=True)


def is_active_command(unit: str) -> RemoteCommand:
    return RemoteCommand("systemctl is-active {}".format(unit), as_sudo=True)


def unit_path(unit: str) -> str:
    return posixpath.join(DEFAULT_FLEET_SYSTEMD_DIR, "{}.service".format(unit))


def override_dir(unit: str) -> str:
    return posixpath.join(DEFAULT_FLEET_SYSTEMD_DIR,
                          "{}.service.d".format(unit))


def unit_remote_dir(remote_dir: str) -> str:
    """
    systemd does not expand '~' in unit files. The home directory is left as
    HOME_MARKER and filled in on the node by install_unit_script().
    """
    if remote_dir == "~" or remote_dir.startswith("~/"):
        return HOME_MARKER + remote_dir[1:]
    return remote_dir


def render_unit(instance: ServiceInstance,
                remote_dir: str = DEFAULT_FLEET_REMOTE_DIR) -> str:
    return UNIT_TEMPLATE.format(role=instance.role.value, user=USER_MARKER,
                                remote_dir=unit_remote_dir(remote_dir))


def install_unit_script(source: str, target: str) -> str:
    """
    Shell fragment writing the unit file 'source' to 'target' with the login
    user's home and name substituted. Run it with LOGIN_ARGS appended.
    """
    return 'sed -e "s|{}|$1|g" -e "s|{}|$2|g" {} > {}'.format(
        HOME_MARKER, USER_MARKER, source, target)


def render_override(instance: ServiceInstance) -> str:
    env = instance.bindings.daemon_env()
    environment = "\n".join('Environment="{}={}"'.format(k, env[k])
                            for k in sorted(env))
    return OVERRIDE_TEMPLATE.format(environment=environment)


def export_prefix(env) -> str:
    """Render env as 'export K=V && ...' for inline use in a remote shell."""
    return " && ".join("export {}={}".format(k, shlex.quote(str(env[k])))
                       for k in sorted(env))
