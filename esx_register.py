import argparse
import logging
import ssl
import sys
from dataclasses import dataclass, field
from getpass import getpass
from typing import List, Optional

from pyVim import connect
from pyVim.task import WaitForTask
from pyVmomi import vim, vmodl

from register_config import Settings
from vmx_paths import InvalidPathError, browser_path, browser_root, correct_path

logger = logging.getLogger(__name__)

VMX_PATTERN = "*.vmx"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


class RegistrarError(Exception):
    """Base class for lookup failures against the host inventory."""


class DatastoreNotFoundError(RegistrarError):
    pass


class HostNotFoundError(RegistrarError):
    pass


@dataclass
class DescriptorFile:
    full_path: str
    name: str


@dataclass
class DatastoreRef:
    name: str
    browser_root: str
    datastore: object


@dataclass
class RegistrationOutcome:
    path: str
    datastore_path: Optional[str] = None
    vm_name: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class BatchReport:
    outcomes: List[RegistrationOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[RegistrationOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> List[RegistrationOutcome]:
        return [o for o in self.outcomes if not o.succeeded]


def _fault_text(error):
    return getattr(error, "msg", None) or str(error)


# Permissive TLS for self-signed host certificates, scoped to one connection
def build_ssl_context(ignore_cert_errors):
    if not ignore_cert_errors:
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class HostSession:
    """Authenticated session to an ESXi host, released once on exit.

    Usage::

        with HostSession("esx01", "root", "secret") as session:
            content = session.content
    """

    def __init__(self, host, user, password, port=443, ignore_cert_errors=False):
        self.host = host
        self.user = user
        self.password = password
        self.port = port
        self.ignore_cert_errors = ignore_cert_errors
        self.service_instance = None
        self._content = None

    def __enter__(self):
        # Connection and login failures propagate to the caller, no retry
        self.service_instance = connect.SmartConnect(host=self.host,
                                                    user=self.user,
                                                    pwd=self.password,
                                                    port=self.port,
                                                    sslContext=build_ssl_context(self.ignore_cert_errors))
        logger.debug(f"Connected to {self.host}:{self.port} as {self.user}")
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.service_instance is None:
            return False
        try:
            connect.Disconnect(self.service_instance)
            logger.debug(f"Disconnected from {self.host}")
        except Exception as e:
            logger.warning(f"Error during disconnect from {self.host}: {e}")
        finally:
            self.service_instance = None
            self._content = None
        return False

    @property
    def content(self):
        if self._content is None:
            self._content = self.service_instance.RetrieveContent()
        return self._content


def _container_objects(content, vim_type):
    view = content.viewManager.CreateContainerView(content.rootFolder, [vim_type], True)
    try:
        return list(view.view)
    finally:
        view.Destroy()


def find_datastore(content, host, name):
    for datastore in _container_objects(content, vim.Datastore):
        if datastore.name == name:
            return DatastoreRef(name=datastore.name,
                                browser_root=browser_root(host, datastore.name),
                                datastore=datastore)
    raise DatastoreNotFoundError(f"Datastore '{name}' not found on {host}")


def find_host(content, name, allow_single_fallback=False):
    """Look up a HostSystem by inventory name.

    A standalone ESXi host often knows itself by a name other than the
    address we connected with; with allow_single_fallback the only host in
    the inventory is used when the name does not match.
    """
    hosts = _container_objects(content, vim.HostSystem)
    for host in hosts:
        if host.name == name:
            return host
    if allow_single_fallback and len(hosts) == 1:
        logger.debug(f"Host '{name}' not in inventory, using sole host '{hosts[0].name}'")
        return hosts[0]
    raise HostNotFoundError(f"Host '{name}' not found in inventory")


def find_datacenter(content, datastore):
    for datacenter in _container_objects(content, vim.Datacenter):
        if datastore in datacenter.datastore:
            return datacenter
    raise RegistrarError(f"No datacenter holds datastore '{datastore.name}'")


def list_descriptor_files(datastore_ref):
    """Recursively search the datastore for VM descriptor (.vmx) files."""
    search_spec = vim.host.DatastoreBrowser.SearchSpec(matchPattern=[VMX_PATTERN])
    task = datastore_ref.datastore.browser.SearchDatastoreSubFolders_Task(
        datastorePath=f"[{datastore_ref.name}]", searchSpec=search_spec)
    WaitForTask(task)

    files = []
    for result in task.info.result or []:
        for found in result.file or []:
            try:
                full_path = browser_path(datastore_ref.browser_root, result.folderPath, found.path,
                                         datastore_name=datastore_ref.name)
            except InvalidPathError as e:
                logger.error(f"Skipping search result {found.path}: {e}")
                continue
            logger.debug(f"Found descriptor {full_path}")
            files.append(DescriptorFile(full_path=full_path, name=found.path))
    return files


class RegistrationTarget:
    """VM folder, resource pool and host that RegisterVM_Task needs.

    Resolved on first use so a missing host shows up as a per-file failure.
    """

    def __init__(self, content, datastore_ref, host_name, allow_single_fallback=False):
        self.content = content
        self.datastore_ref = datastore_ref
        self.host_name = host_name
        self.allow_single_fallback = allow_single_fallback
        self._resolved = None

    def resolve(self):
        if self._resolved is None:
            host = find_host(self.content, self.host_name, self.allow_single_fallback)
            datacenter = find_datacenter(self.content, self.datastore_ref.datastore)
            self._resolved = (datacenter.vmFolder, host.parent.resourcePool, host)
        return self._resolved

    def register(self, datastore_path):
        folder, pool, host = self.resolve()
        task = folder.RegisterVM_Task(path=datastore_path, asTemplate=False, pool=pool, host=host)
        # WaitForTask raises the task's fault if registration fails
        WaitForTask(task)
        return task.info.result


def register_descriptor(descriptor, datastore_ref, target, dry_run=False):
    logger.info(f"Processing {descriptor.full_path}")
    datastore_path = None
    try:
        datastore_path = correct_path(descriptor.full_path, datastore_ref.browser_root, datastore_ref.name)
        if dry_run:
            logger.info(f"Would register {datastore_path}")
            return RegistrationOutcome(path=descriptor.full_path, datastore_path=datastore_path)
        vm = target.register(datastore_path)
    except vmodl.MethodFault as error:
        logger.error(f"Failed to register {descriptor.full_path}: {_fault_text(error)}")
        return RegistrationOutcome(path=descriptor.full_path, datastore_path=datastore_path,
                                   error=_fault_text(error))
    except Exception as e:
        logger.error(f"Failed to register {descriptor.full_path}: {e}")
        return RegistrationOutcome(path=descriptor.full_path, datastore_path=datastore_path, error=str(e))

    logger.info(f"Registered VM '{vm.name}' from {datastore_path}")
    return RegistrationOutcome(path=descriptor.full_path, datastore_path=datastore_path, vm_name=vm.name)


def register_datastore(host, user, password, datastore, target_host=None,
                       ignore_cert_errors=False, port=443, dry_run=False):
    """Register every .vmx file found on a datastore.

    Connection, login and datastore lookup failures propagate. A failure on
    one file is logged and recorded in the report; the remaining files are
    still attempted. The session is disconnected on every exit path.
    """
    target_host = target_host or host
    report = BatchReport()

    with HostSession(host, user, password, port=port, ignore_cert_errors=ignore_cert_errors) as session:
        content = session.content
        datastore_ref = find_datastore(content, host, datastore)

        descriptors = list_descriptor_files(datastore_ref)
        if not descriptors:
            logger.info(f"No .vmx files found on datastore '{datastore}'")
            return report

        target = RegistrationTarget(content, datastore_ref, target_host,
                                    allow_single_fallback=target_host == host)
        for descriptor in descriptors:
            report.outcomes.append(register_descriptor(descriptor, datastore_ref, target, dry_run=dry_run))

    if dry_run:
        logger.info(f"Dry run finished: {len(report.succeeded)} would be registered, {len(report.failed)} failed")
    else:
        logger.info(f"Finished: {len(report.succeeded)} registered, {len(report.failed)} failed")
    return report


def build_arg_parser(settings):
    parser = argparse.ArgumentParser(
        description="Register every VM found on an ESXi datastore")
    parser.add_argument("-s", "--host", default=settings.host,
                        help="ESXi host to connect to (ESX_HOST)")
    parser.add_argument("-u", "--user", default=settings.user,
                        help="Username (ESX_USER)")
    parser.add_argument("-p", "--password", default=settings.password,
                        help="Password (ESX_PASSWORD), prompted for when omitted")
    parser.add_argument("-d", "--datastore", default=settings.datastore,
                        help="Datastore to scan for .vmx files (ESX_DATASTORE)")
    parser.add_argument("-t", "--target-host", default=settings.target_host,
                        help="Host to register the VMs on, defaults to --host (ESX_TARGET_HOST)")
    parser.add_argument("-o", "--port", type=int, default=settings.port,
                        help="API port (ESX_PORT)")
    parser.add_argument("-k", "--ignore-cert-errors", action="store_true",
                        default=settings.ignore_cert_errors,
                        help="Do not validate the host's TLS certificate (ESX_IGNORE_CERT_ERRORS)")
    parser.add_argument("--dry-run", action="store_true",
                        help="Only list the paths that would be registered")
    parser.add_argument("--log-level", default=settings.log_level,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging verbosity (LOG_LEVEL)")
    return parser


def main(argv=None):
    settings = Settings()
    parser = build_arg_parser(settings)
    args = parser.parse_args(argv)
    if not args.host:
        parser.error("--host is required (or set ESX_HOST)")
    if not args.datastore:
        parser.error("--datastore is required (or set ESX_DATASTORE)")

    logging.basicConfig(stream=sys.stdout, level=args.log_level, format=LOG_FORMAT)

    password = args.password or getpass(f"Password for {args.user}@{args.host}: ")

    try:
        report = register_datastore(args.host, args.user, password, args.datastore,
                                    target_host=args.target_host,
                                    ignore_cert_errors=args.ignore_cert_errors,
                                    port=args.port,
                                    dry_run=args.dry_run)
    except vmodl.MethodFault as error:
        logger.error(f"Caught vmodl fault: {_fault_text(error)}")
        return 2
    except RegistrarError as e:
        logger.error(str(e))
        return 2
    except OSError as e:
        logger.error(f"Could not connect to {args.host}: {e}")
        return 2

    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
