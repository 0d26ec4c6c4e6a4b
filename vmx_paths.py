import re

# Browser paths use backslashes, datastore paths use forward slashes
SEPARATORS = "\\/"
BROWSER_DRIVE = "vmstores:"

DATASTORE_PATH_RE = re.compile(r"^\[(?P<datastore>[^\]]+)\]\s*(?P<relative>.*)$")


class InvalidPathError(ValueError):
    """Raised when a path cannot be translated between addressing schemes."""


def _comparable(path):
    return path.replace("/", "\\").lower()


# Build the browser root for a datastore, e.g. vmstores:\esx01\Datastore1
def browser_root(host, datastore):
    return f"{BROWSER_DRIVE}\\{host}\\{datastore}"


def correct_path(full_path, browser_root_path, datastore_name):
    """Convert a browser path into the bracketed form RegisterVM expects.

    ``vmstores:\\esx01\\Datastore1\\VM1\\VM1.vmx`` under the root
    ``vmstores:\\esx01\\Datastore1`` becomes ``[Datastore1] VM1/VM1.vmx``.
    The prefix match ignores case and treats both slash styles as equal.

    Raises:
        InvalidPathError: if full_path is not a file below browser_root_path
    """
    root = browser_root_path.rstrip(SEPARATORS) + "\\"
    if not _comparable(full_path).startswith(_comparable(root)):
        raise InvalidPathError(
            f"Path '{full_path}' is not under datastore root '{browser_root_path}'"
        )

    remainder = full_path[len(root):].lstrip(SEPARATORS).replace("\\", "/")
    if not remainder:
        raise InvalidPathError(f"Path '{full_path}' does not name a file below '{browser_root_path}'")

    return f"[{datastore_name}] {remainder}"


def split_datastore_path(datastore_path, datastore_name=None):
    """Split ``[ds] folder/file`` into ``("ds", "folder/file")``.

    Datastore names may themselves contain brackets; pass datastore_name
    when it is known so the exact ``[name]`` prefix is stripped instead of
    guessing where the name ends.
    """
    path = datastore_path.strip()
    if datastore_name is not None:
        prefix = f"[{datastore_name}]"
        if not path.startswith(prefix):
            raise InvalidPathError(f"Datastore path '{datastore_path}' is not on datastore '{datastore_name}'")
        return datastore_name, path[len(prefix):].lstrip()

    match = DATASTORE_PATH_RE.match(path)
    if not match:
        raise InvalidPathError(f"Malformed datastore path '{datastore_path}'")
    return match.group("datastore"), match.group("relative")


# Turn a datastore browser hit (folderPath + file name) into a full browser path
def browser_path(root, folder_path, file_name, datastore_name=None):
    _, relative = split_datastore_path(folder_path, datastore_name)
    parts = [root.rstrip(SEPARATORS)]
    parts.extend(part for part in re.split(r"[\\/]", relative) if part)
    parts.append(file_name)
    return "\\".join(parts)
