"""
## Instance Identity

- allocate_identity
- instance_identities

"""


def allocate_identity(base_id: int, base_name: str, count: int, ordinal: int):
    """Derives the (id, name) pair of one ordinal position of an instance group.

    A group of one keeps the base id and base name unchanged. Larger groups
    offset the id by the ordinal and suffix the name with the 1-based position.

    Args:
        base_id (int):
            The first instance id of the group, >= 0.
        base_name (str):
            The name of the group.
        count (int):
            The number of instances in the group, >= 1.
        ordinal (int):
            The zero-based position inside the group, 0 <= ordinal < count.

    Returns:
        tuple[int, str]:
            The instance id and instance name.

    Raises:
        ValueError:
            If the ordinal is outside of 0..count-1.
    """
    if not 0 <= ordinal < max(count, 1):
        raise ValueError("ordinal {} out of range for count {}".format(ordinal, count))
    if count <= 1:
        return base_id, base_name
    return base_id + ordinal, "{}-{}".format(base_name, ordinal + 1)


def instance_identities(base_id: int, base_name: str, count: int):
    "yield (ordinal, id, name) for every position of a group"
    for ordinal in range(max(count, 1)):
        vmid, name = allocate_identity(base_id, base_name, count, ordinal)
        yield ordinal, vmid, name
