"""Shared fixtures: a mocked ESXi inventory behind pyVim.connect."""

from types import SimpleNamespace
from unittest import mock

import pytest
from pyVmomi import vim


def _search_hit(folder_path, *names):
    return SimpleNamespace(folderPath=folder_path,
                           file=[SimpleNamespace(path=name) for name in names])


@pytest.fixture
def search_hit():
    """Factory for datastore browser results: search_hit("[ds] VM1", "VM1.vmx")."""
    return _search_hit


@pytest.fixture
def inventory():
    """Single-host inventory with one datacenter and one datastore."""
    datastore = mock.MagicMock()
    datastore.name = "Datastore1"
    datastore.browser.SearchDatastoreSubFolders_Task.return_value.info.result = []

    host = mock.MagicMock()
    host.name = "esx01.lab.local"

    datacenter = mock.MagicMock()
    datacenter.name = "ha-datacenter"
    datacenter.datastore = [datastore]

    def register_vm(path, asTemplate, pool, host):
        task = mock.MagicMock()
        task.info.result.name = path.rsplit("/", 1)[-1].replace(".vmx", "")
        return task

    datacenter.vmFolder.RegisterVM_Task.side_effect = register_vm

    objects = {
        vim.Datastore: [datastore],
        vim.HostSystem: [host],
        vim.Datacenter: [datacenter],
    }

    content = mock.MagicMock()
    content.viewManager.CreateContainerView.side_effect = (
        lambda root, types, recursive: mock.MagicMock(view=objects[types[0]])
    )

    return SimpleNamespace(content=content, datastore=datastore, host=host,
                           datacenter=datacenter, objects=objects)


@pytest.fixture
def mock_connect(inventory):
    """Patch SmartConnect/Disconnect so sessions return the mocked inventory."""
    with mock.patch("esx_register.connect") as connect:
        connect.SmartConnect.return_value.RetrieveContent.return_value = inventory.content
        yield connect


@pytest.fixture
def mock_wait():
    with mock.patch("esx_register.WaitForTask") as wait:
        yield wait


@pytest.fixture
def clean_env(monkeypatch):
    for name in ["ESX_HOST", "ESX_USER", "ESX_PASSWORD", "ESX_DATASTORE", "ESX_TARGET_HOST",
                 "ESX_PORT", "ESX_IGNORE_CERT_ERRORS", "LOG_LEVEL"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("register_config.load_dotenv", lambda: None)
