"""
End-to-end tests for UpgradeCoordinator against an in-memory Portainer.

The real PortainerClient, EndpointSession, readiness/stop monitors and
dependent handling run unmodified; only HTTP and time are faked.
"""

import httpx
import pytest

from upgrades.errors import ContainerCreateError, ContainerExitedError, UpgradeInProgressError
from upgrades.types import ContainerIdentity, DependencyReason, DependentContainer, UpgradeStage, UpgradeTarget

GLUETUN_OLD = "qmcgaw/gluetun:v3.38"
GLUETUN_NEW = "qmcgaw/gluetun:v3.39"
PROXY_IMAGE = "jc21/nginx-proxy-manager:latest"


@pytest.fixture
def vpn_stack(portainer):
    """
    vpn (stack proj1) owns the network namespace of torrent; web is a plain
    proj1 sibling.
    """
    ids = {
        'vpn': portainer.add_container("vpn", GLUETUN_OLD, labels={'com.docker.compose.project': 'proj1'}),
        'torrent': portainer.add_container("torrent", "linuxserver/qbittorrent:latest", network_mode="container:vpn"),
        'web': portainer.add_container("web", "nginx:1.27", labels={'com.docker.compose.project': 'proj1'}),
    }
    return ids


@pytest.mark.unit
class TestUpgradeWithNetworkDependent:
    """Upgrading a network namespace owner rebuilds its dependents against the new ID"""

    @pytest.mark.asyncio
    async def test_dependent_rebuilt_against_new_container(self, coordinator, portainer, instance, vpn_stack):
        """
        Scenario:
        - vpn runs on bridge in stack proj1, torrent uses network_mode container:vpn
        - vpn is upgraded to a new image

        Expected:
        - vpn is recreated under a new ID with the new image
        - torrent is removed before the upgrade and rebuilt with NetworkMode container:<new vpn ID>
        - both end up running, no dependent warnings
        """
        target = UpgradeTarget(
            instance_url=instance.url,
            endpoint_id="1",
            container_id=vpn_stack['vpn'],
            image=GLUETUN_OLD,
            new_image=GLUETUN_NEW,
        )

        result = await coordinator.upgrade(target)

        assert result.success is True
        assert result.dependent_warnings == []
        assert result.container_name == "vpn"
        assert result.new_container_id != vpn_stack['vpn']
        assert vpn_stack['vpn'] not in portainer.containers

        vpn = portainer.containers[result.new_container_id]
        assert vpn['Name'] == "/vpn"
        assert vpn['Config']['Image'] == GLUETUN_NEW
        assert vpn['State']['Status'] == "running"

        torrent = portainer.by_name("torrent")
        assert torrent is not None
        assert torrent['Id'] != vpn_stack['torrent']
        assert torrent['HostConfig']['NetworkMode'] == f"container:{result.new_container_id}"
        assert torrent['State']['Status'] == "running"

        assert portainer.pulls == [GLUETUN_NEW]

    @pytest.mark.asyncio
    async def test_stack_sibling_restarted(self, coordinator, portainer, instance, vpn_stack):
        """Running proj1 sibling is stopped and started again, keeping its ID"""
        target = UpgradeTarget(instance.url, "1", vpn_stack['vpn'], image=GLUETUN_OLD, new_image=GLUETUN_NEW)

        await coordinator.upgrade(target)

        web = portainer.containers[vpn_stack['web']]
        assert web['State']['Status'] == "running"
        assert len(portainer.requests_to('POST', f"/containers/{vpn_stack['web']}/stop")) == 1
        assert len(portainer.requests_to('POST', f"/containers/{vpn_stack['web']}/start")) == 1

    @pytest.mark.asyncio
    async def test_progress_reported_in_order(self, coordinator, instance, vpn_stack):
        """Progress goes from inspecting to completed with non-decreasing percentages"""
        events = []

        async def on_progress(stage, percent, message):
            events.append((stage, percent))

        target = UpgradeTarget(instance.url, "1", vpn_stack['vpn'], image=GLUETUN_OLD, new_image=GLUETUN_NEW)
        await coordinator.upgrade(target, progress_callback=on_progress)

        stages = [stage for stage, _ in events]
        percents = [percent for _, percent in events]
        assert stages[0] == UpgradeStage.INSPECTING.value
        assert stages[-1] == UpgradeStage.COMPLETED.value
        assert UpgradeStage.READINESS_CHECK.value in stages
        assert percents == sorted(percents)
        assert percents[-1] == 100

    @pytest.mark.asyncio
    async def test_failing_progress_callback_does_not_abort(self, coordinator, instance, vpn_stack):
        """A broken progress callback is logged and ignored"""
        async def broken(stage, percent, message):
            raise RuntimeError("websocket closed")

        target = UpgradeTarget(instance.url, "1", vpn_stack['vpn'], image=GLUETUN_OLD, new_image=GLUETUN_NEW)
        result = await coordinator.upgrade(target, progress_callback=broken)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_dependent_failure_becomes_warning(self, coordinator, portainer, instance, vpn_stack):
        """
        Scenario:
        - Recreating torrent fails on the remote side

        Expected:
        - The upgrade still succeeds
        - One NETWORK_MODE warning names torrent
        """
        original_create = portainer._create

        def create_failing_for_torrent(request):
            if request.url.params.get('name') == 'torrent':
                return httpx.Response(500, json={'message': 'no space left on device'})
            return original_create(request)

        portainer._create = create_failing_for_torrent

        target = UpgradeTarget(instance.url, "1", vpn_stack['vpn'], image=GLUETUN_OLD, new_image=GLUETUN_NEW)
        result = await coordinator.upgrade(target)

        assert result.success is True
        assert len(result.dependent_warnings) == 1
        warning = result.dependent_warnings[0]
        assert warning.container_name == "torrent"
        assert warning.reason is DependencyReason.NETWORK_MODE
        assert "no space left on device" in warning.message


@pytest.mark.unit
class TestUpgradeFailures:
    """Primary-path failures are raised and stop the upgrade"""

    @pytest.mark.asyncio
    async def test_exited_container_aborts_before_dependents(self, coordinator, portainer, instance, vpn_stack):
        """
        Scenario:
        - The new image exits with code 1 right after start

        Expected:
        - ContainerExitedError with exit code and log tail
        - torrent is not rebuilt, web is not restarted
        - FAILED is the last progress stage
        """
        portainer.image_behaviour[GLUETUN_NEW] = {'exit_code': 1}
        events = []

        async def on_progress(stage, percent, message):
            events.append(stage)

        target = UpgradeTarget(instance.url, "1", vpn_stack['vpn'], image=GLUETUN_OLD, new_image=GLUETUN_NEW)

        with pytest.raises(ContainerExitedError) as exc_info:
            await coordinator.upgrade(target, progress_callback=on_progress)

        error = exc_info.value
        assert error.exit_code == 1
        assert "Container exited with code 1" in str(error)
        assert "fatal: configuration invalid" in error.logs
        assert portainer.by_name("torrent") is None
        assert portainer.requests_to('POST', f"/containers/{vpn_stack['web']}/stop") == []
        assert events[-1] == UpgradeStage.FAILED.value

    @pytest.mark.asyncio
    async def test_create_rejected_raises_create_error(self, coordinator, portainer, instance, vpn_stack):
        """400 from create becomes ContainerCreateError with a configuration hint"""
        portainer._create = lambda request: httpx.Response(400, json={'message': 'invalid IPAMConfig'})

        target = UpgradeTarget(instance.url, "1", vpn_stack['vpn'], image=GLUETUN_OLD, new_image=GLUETUN_NEW)

        with pytest.raises(ContainerCreateError) as exc_info:
            await coordinator.upgrade(target)

        assert exc_info.value.status_code == 400
        assert "invalid IPAMConfig" in str(exc_info.value)
        assert "network configuration, port conflicts" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_concurrent_upgrade_of_same_container_rejected(self, coordinator, instance, vpn_stack):
        """Second upgrade of a locked container fails fast"""
        coordinator.lock_manager.acquire(instance.url, "1", vpn_stack['vpn'])

        target = UpgradeTarget(instance.url, "1", vpn_stack['vpn'], image=GLUETUN_OLD, new_image=GLUETUN_NEW)

        with pytest.raises(UpgradeInProgressError):
            await coordinator.upgrade(target)

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, coordinator, portainer, instance, vpn_stack):
        portainer.image_behaviour[GLUETUN_NEW] = {'exit_code': 2}
        target = UpgradeTarget(instance.url, "1", vpn_stack['vpn'], image=GLUETUN_OLD, new_image=GLUETUN_NEW)

        with pytest.raises(ContainerExitedError):
            await coordinator.upgrade(target)

        assert coordinator.lock_manager.is_locked(instance.url, "1", vpn_stack['vpn']) is False


@pytest.mark.unit
class TestReverseProxyUpgrade:
    """Upgrading the reverse proxy in front of Portainer fails over to the instance IP"""

    @pytest.mark.asyncio
    async def test_calls_switch_to_ip_once_proxy_stops(self, coordinator, portainer, instance):
        """
        Scenario:
        - Portainer is only reachable by hostname through nginx-proxy-manager
        - nginx-proxy-manager itself is upgraded

        Expected:
        - Calls use the hostname until the proxy is stopped
        - The first connection failure switches to https://<cached IP>:9443
        - Every later call in the upgrade goes to the IP with the original Host header
        - The upgrade completes
        """
        proxy_id = portainer.add_container("npm", PROXY_IMAGE)
        target = UpgradeTarget(instance.url, "1", proxy_id, image=PROXY_IMAGE)

        result = await coordinator.upgrade(target)

        assert result.success is True
        assert portainer.containers[result.new_container_id]['State']['Status'] == "running"

        hosts = [request.url.host for request in portainer.requests]
        assert hosts[0] == "portainer.example.com"
        first_ip_call = hosts.index(instance.ip_address)

        # The stop went out over the hostname; afterwards the hostname is dead
        stop_requests = portainer.requests_to('POST', f"/containers/{proxy_id}/stop")
        assert stop_requests[0].url.host == "portainer.example.com"

        for request in portainer.requests[first_ip_call:]:
            assert request.url.host == instance.ip_address
            assert request.url.port == 9443
            assert request.headers['host'] == "portainer.example.com"

    @pytest.mark.asyncio
    async def test_same_image_repulled_when_no_new_image(self, coordinator, portainer, instance):
        """Without new_image the current repository:tag is pulled and recreated"""
        proxy_id = portainer.add_container("npm", PROXY_IMAGE)
        target = UpgradeTarget(instance.url, "1", proxy_id, image=PROXY_IMAGE)

        result = await coordinator.upgrade(target)

        assert result.image == PROXY_IMAGE
        assert portainer.pulls == [PROXY_IMAGE]


@pytest.mark.unit
class TestUpgradedContainerVerification:
    """Network dependents are only rebuilt once the namespace owner is running"""

    @pytest.mark.asyncio
    async def test_recovers_after_short_wait(self, coordinator, mock_session, make_snapshot, fake_clock):
        mock_session.inspect.side_effect = [
            make_snapshot("vpn", status="restarting"),
            make_snapshot("vpn", status="running"),
        ]

        error = await coordinator._verify_upgraded_running(mock_session, "new-vpn", "vpn")

        assert error is None
        assert fake_clock.sleeps == [coordinator.settings.verify_running_delay]

    @pytest.mark.asyncio
    async def test_still_down_returns_message(self, coordinator, mock_session, make_snapshot):
        """
        Scenario:
        - The upgraded container has exited by the time dependents are restored

        Expected:
        - An error message naming the container, no exception
        """
        mock_session.inspect.return_value = make_snapshot("vpn", status="exited", exit_code=1)

        error = await coordinator._verify_upgraded_running(mock_session, "new-vpn", "vpn")

        assert error == "Network container vpn is not running. Cannot create dependent containers."

    @pytest.mark.asyncio
    async def test_inspect_failure_returns_message(self, coordinator, mock_session):
        mock_session.inspect.side_effect = RuntimeError("connection reset")

        error = await coordinator._verify_upgraded_running(mock_session, "new-vpn", "vpn")

        assert "connection reset" in error


@pytest.mark.unit
class TestDependentConfigurationCapture:
    """A removed dependent always comes back, or is reported as a warning"""

    @pytest.mark.asyncio
    async def test_flaky_inspect_after_scan_still_rebuilds(self, coordinator, portainer, instance, vpn_stack):
        """
        Scenario:
        - The scan inspects torrent successfully
        - The next inspect of torrent returns 500

        Expected:
        - torrent is rebuilt from the configuration seen by the scan
        - It runs in the namespace of the new vpn container, no warnings
        """
        original_docker = portainer._docker
        torrent_inspects = []

        def flaky_docker(request, rest):
            if request.method == 'GET' and rest == f"/containers/{vpn_stack['torrent']}/json":
                torrent_inspects.append(request)
                if len(torrent_inspects) == 2:
                    return httpx.Response(500, json={'message': 'transient'})
            return original_docker(request, rest)

        portainer._docker = flaky_docker

        target = UpgradeTarget(instance.url, "1", vpn_stack['vpn'], image=GLUETUN_OLD, new_image=GLUETUN_NEW)
        result = await coordinator.upgrade(target)

        assert result.success is True
        assert result.dependent_warnings == []
        torrent = portainer.by_name("torrent")
        assert torrent is not None
        assert torrent['HostConfig']['NetworkMode'] == f"container:{result.new_container_id}"
        assert torrent['State']['Status'] == "running"

    @pytest.mark.asyncio
    async def test_lost_dependent_reported(self, coordinator, mock_session):
        """
        Scenario:
        - A NETWORK_MODE dependent from the pre-upgrade pass has no captured
          configuration and is not found after the upgrade

        Expected:
        - One NETWORK_MODE warning names it
        """
        identity = ContainerIdentity(id="a" * 64, name="vpn", endpoint_id="1", instance_url="https://portainer.example.com")
        lost = DependentContainer(
            id="c" * 64, name="torrent", is_running=True, is_stopped=False,
            reason=DependencyReason.NETWORK_MODE, network_mode="container:vpn",
        )

        outcomes = await coordinator._restore_dependents(mock_session, identity, None, "b" * 64, [lost], {})

        warnings = [o.to_warning() for o in outcomes]
        assert len(warnings) == 1
        assert warnings[0].container_name == "torrent"
        assert warnings[0].reason is DependencyReason.NETWORK_MODE
        assert "recreate it manually" in warnings[0].message
        mock_session.create.assert_not_awaited()


@pytest.mark.unit
class TestUpgradeLockIdentity:

    @pytest.mark.asyncio
    async def test_name_and_id_references_share_lock(self, coordinator, portainer, instance, vpn_stack):
        """
        Scenario:
        - An upgrade of vpn requested by full ID holds the lock
        - A second upgrade requests vpn by name

        Expected:
        - The second upgrade is rejected and vpn is left untouched
        """
        coordinator.lock_manager.acquire(instance.url, "1", vpn_stack['vpn'])

        target = UpgradeTarget(instance.url, "1", "vpn", image=GLUETUN_OLD, new_image=GLUETUN_NEW)

        with pytest.raises(UpgradeInProgressError):
            await coordinator.upgrade(target)

        assert vpn_stack['vpn'] in portainer.containers
        assert portainer.requests_to('POST', f"/containers/{vpn_stack['vpn']}/stop") == []
