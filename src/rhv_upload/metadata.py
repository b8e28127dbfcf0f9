"""
VM metadata documents.

The createvm helper registers a VM from an OVF document.  Builders are
pluggable; :class:`OvfBuilder` writes the minimal oVirt-flavoured OVF that
describes the uploaded disks and the VM's basic hardware.
"""

import xml.etree.ElementTree as ET
from typing import List, Protocol, Sequence

from .models import DiskTransferTarget, GuestInfo, TargetFirmware


OVF_NS = "http://schemas.dmtf.org/ovf/envelope/1/"
RASD_NS = (
    "http://schemas.dmtf.org/wbem/wscim/1/cim-schema/2/"
    "CIM_ResourceAllocationSettingData"
)
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"

GIB = 1024 * 1024 * 1024


class MetadataBuilder(Protocol):
    def build(
        self,
        guest: GuestInfo,
        targets: Sequence[DiskTransferTarget],
        sd_uuid: str,
        image_uuids: Sequence[str],
        vol_uuids: Sequence[str],
        vm_uuid: str,
        sparse: bool,
    ) -> str: ...


def _ovf(tag: str) -> str:
    return f"{{{OVF_NS}}}{tag}"


def _rasd(tag: str) -> str:
    return f"{{{RASD_NS}}}{tag}"


class OvfBuilder:
    """Builds the OVF document passed to the createvm helper."""

    def build(
        self,
        guest: GuestInfo,
        targets: Sequence[DiskTransferTarget],
        sd_uuid: str,
        image_uuids: Sequence[str],
        vol_uuids: Sequence[str],
        vm_uuid: str,
        sparse: bool,
    ) -> str:
        ET.register_namespace("ovf", OVF_NS)
        ET.register_namespace("rasd", RASD_NS)
        ET.register_namespace("xsi", XSI_NS)

        envelope = ET.Element(_ovf("Envelope"), {_ovf("version"): "0.9"})

        references = ET.SubElement(envelope, "References")
        section = ET.SubElement(
            envelope,
            "Section",
            {f"{{{XSI_NS}}}type": "ovf:DiskSection_Type"},
        )
        ET.SubElement(section, "Info").text = "List of Virtual Disks"

        for target, image_uuid, vol_uuid in zip(targets, image_uuids, vol_uuids):
            href = f"{image_uuid}/{vol_uuid}"
            ET.SubElement(
                references,
                "File",
                {
                    _ovf("href"): href,
                    _ovf("id"): vol_uuid,
                    _ovf("description"): guest.name,
                },
            )
            ET.SubElement(
                section,
                "Disk",
                {
                    _ovf("diskId"): vol_uuid,
                    _ovf("size"): str(_round_up_gib(target.virtual_size)),
                    _ovf("fileRef"): href,
                    _ovf("parentRef"): "",
                    _ovf("vm_snapshot_id"): vm_uuid,
                    _ovf("volume-format"): (
                        "COW" if target.format.value == "qcow2" else "RAW"
                    ),
                    _ovf("volume-type"): "Sparse" if sparse else "Preallocated",
                    _ovf("format"): "http://en.wikipedia.org/wiki/Byte",
                    _ovf("disk-interface"): "VirtIO",
                    _ovf("disk-type"): "System",
                    _ovf("boot"): "true" if target is targets[0] else "false",
                },
            )

        envelope.append(self._virtual_system(guest, targets, sd_uuid,
                                             image_uuids, vol_uuids, vm_uuid))
        return ET.tostring(envelope, encoding="unicode", xml_declaration=True)

    def _virtual_system(
        self,
        guest: GuestInfo,
        targets: Sequence[DiskTransferTarget],
        sd_uuid: str,
        image_uuids: Sequence[str],
        vol_uuids: Sequence[str],
        vm_uuid: str,
    ) -> ET.Element:
        content = ET.Element(
            "Content",
            {_ovf("id"): "out", f"{{{XSI_NS}}}type": "ovf:VirtualSystem_Type"},
        )
        ET.SubElement(content, "Name").text = guest.name
        ET.SubElement(content, "TemplateId").text = (
            "00000000-0000-0000-0000-000000000000"
        )
        ET.SubElement(content, "Origin").text = "1"
        ET.SubElement(content, "BiosType").text = (
            "4" if guest.firmware is TargetFirmware.UEFI else "1"
        )

        hardware = ET.SubElement(
            content,
            "Section",
            {f"{{{XSI_NS}}}type": "ovf:VirtualHardwareSection_Type"},
        )
        ET.SubElement(hardware, "Info").text = (
            f"{guest.vcpus} CPU, {guest.memory // (1024 * 1024)} Memory"
        )
        items: List[ET.Element] = [
            _item(
                caption=f"{guest.vcpus} virtual cpu",
                resource_type="3",
                extra={"num_of_sockets": str(guest.vcpus), "cpu_per_socket": "1"},
            ),
            _item(
                caption=f"{guest.memory // (1024 * 1024)} MB of memory",
                resource_type="4",
                extra={"VirtualQuantity": str(guest.memory // (1024 * 1024))},
            ),
        ]
        for target, image_uuid, vol_uuid in zip(targets, image_uuids, vol_uuids):
            items.append(
                _item(
                    caption=f"Drive {target.disk_id + 1}",
                    resource_type="17",
                    extra={
                        "InstanceId": vol_uuid,
                        "HostResource": f"{image_uuid}/{vol_uuid}",
                        "StoragePoolId": "00000000-0000-0000-0000-000000000000",
                        "StorageId": sd_uuid,
                    },
                )
            )
        hardware.extend(items)

        ET.SubElement(content, "VmId").text = vm_uuid
        return content


def _item(caption: str, resource_type: str, extra: dict) -> ET.Element:
    item = ET.Element("Item")
    ET.SubElement(item, _rasd("Caption")).text = caption
    ET.SubElement(item, _rasd("ResourceType")).text = resource_type
    for key, value in extra.items():
        ET.SubElement(item, _rasd(key)).text = value
    return item


def _round_up_gib(size: int) -> int:
    return (size + GIB - 1) // GIB
