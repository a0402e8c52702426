"""Readers for the OS TCP and UDP connection tables (IPv4 only)."""

import ctypes
import logging
import socket
import struct
import sys
from typing import Protocol as TypingProtocol

import psutil

from porttop.errors import TableUnavailable
from porttop.models import NO_STATE, ConnectionRecord, Protocol

logger = logging.getLogger(__name__)

# psutil connection kinds for the IPv4 address family.
TCP_KIND = "tcp4"
UDP_KIND = "udp4"

# Windows iphlpapi constants.
AF_INET = 2
TCP_TABLE_OWNER_PID_ALL = 5
UDP_TABLE_OWNER_PID = 1
NO_ERROR = 0
ERROR_INSUFFICIENT_BUFFER = 122

# MIB_TCPROW_OWNER_PID: state, local addr, local port, remote addr, remote port, pid.
# Addresses are kept as raw network-order bytes.
TCP_ROW = struct.Struct("<I4sI4sIi")
# MIB_UDPROW_OWNER_PID: local addr, local port, pid.
UDP_ROW = struct.Struct("<4sIi")
TABLE_HEADER = struct.Struct("<I")

# MIB_TCP_STATE values mapped onto psutil's state names.
TCP_STATES = {
    1: str(psutil.CONN_CLOSE),
    2: str(psutil.CONN_LISTEN),
    3: str(psutil.CONN_SYN_SENT),
    4: str(psutil.CONN_SYN_RECV),
    5: str(psutil.CONN_ESTABLISHED),
    6: str(psutil.CONN_FIN_WAIT1),
    7: str(psutil.CONN_FIN_WAIT2),
    8: str(psutil.CONN_CLOSE_WAIT),
    9: str(psutil.CONN_CLOSING),
    10: str(psutil.CONN_LAST_ACK),
    11: str(psutil.CONN_TIME_WAIT),
    12: "DELETE_TCB",
}


class TableSource(TypingProtocol):
    """Anything that can list the TCP and UDP tables independently."""

    def tcp(self) -> list[ConnectionRecord]: ...

    def udp(self) -> list[ConnectionRecord]: ...


def network_to_host_port(value: int) -> int:
    """Convert a port stored in the low 16 bits in network byte order."""
    return ((value & 0xFF) << 8) | ((value & 0xFF00) >> 8)


def decode_tcp_table(buffer: bytes) -> list[ConnectionRecord]:
    """Decode a raw MIB_TCPTABLE_OWNER_PID buffer."""
    (count,) = TABLE_HEADER.unpack_from(buffer, 0)
    records = []
    offset = TABLE_HEADER.size
    for _ in range(count):
        state, laddr, lport, raddr, rport, pid = TCP_ROW.unpack_from(buffer, offset)
        offset += TCP_ROW.size
        records.append(
            ConnectionRecord(
                protocol=Protocol.TCP,
                local_address=socket.inet_ntoa(laddr),
                local_port=network_to_host_port(lport),
                remote_address=socket.inet_ntoa(raddr),
                remote_port=network_to_host_port(rport),
                state=TCP_STATES.get(state, str(state)),
                pid=pid,
            )
        )
    return records


def decode_udp_table(buffer: bytes) -> list[ConnectionRecord]:
    """Decode a raw MIB_UDPTABLE_OWNER_PID buffer."""
    (count,) = TABLE_HEADER.unpack_from(buffer, 0)
    records = []
    offset = TABLE_HEADER.size
    for _ in range(count):
        laddr, lport, pid = UDP_ROW.unpack_from(buffer, offset)
        offset += UDP_ROW.size
        records.append(
            ConnectionRecord(
                protocol=Protocol.UDP,
                local_address=socket.inet_ntoa(laddr),
                local_port=network_to_host_port(lport),
                remote_address="0.0.0.0",
                remote_port=0,
                state=NO_STATE,
                pid=pid,
            )
        )
    return records


class PsutilTableSource:
    """Connection tables read through psutil.net_connections()."""

    def tcp(self) -> list[ConnectionRecord]:
        return self._read(TCP_KIND, Protocol.TCP)

    def udp(self) -> list[ConnectionRecord]:
        return self._read(UDP_KIND, Protocol.UDP)

    def _read(self, kind: str, protocol: Protocol) -> list[ConnectionRecord]:
        try:
            connections = psutil.net_connections(kind=kind)
        except (psutil.AccessDenied, OSError) as exc:
            raise TableUnavailable(f"Cannot read {protocol.value} table: {exc}") from exc

        records = []
        for conn in connections:
            # raddr is an empty tuple for listening and UDP sockets
            raddr = conn.raddr or ("0.0.0.0", 0)
            if protocol is Protocol.UDP or conn.status == psutil.CONN_NONE:
                state = NO_STATE
            else:
                state = str(conn.status)
            records.append(
                ConnectionRecord(
                    protocol=protocol,
                    local_address=conn.laddr[0],
                    local_port=conn.laddr[1],
                    remote_address=raddr[0],
                    remote_port=raddr[1],
                    state=state,
                    pid=conn.pid if conn.pid is not None else -1,
                )
            )
        return records


class IphlpapiTableSource:
    """
    Owner-PID tables read straight from iphlpapi.dll on Windows.

    The raw buffers are decoded with decode_tcp_table/decode_udp_table.
    """

    def tcp(self) -> list[ConnectionRecord]:
        return decode_tcp_table(self._fetch("GetExtendedTcpTable", TCP_TABLE_OWNER_PID_ALL))

    def udp(self) -> list[ConnectionRecord]:
        return decode_udp_table(self._fetch("GetExtendedUdpTable", UDP_TABLE_OWNER_PID))

    def _fetch(self, function_name: str, table_class: int) -> bytes:
        if sys.platform != "win32":
            raise TableUnavailable("iphlpapi tables are only available on Windows")

        function = getattr(ctypes.windll.iphlpapi, function_name)
        size = ctypes.c_ulong(0)
        result = function(None, ctypes.byref(size), False, AF_INET, table_class, 0)
        # The table can grow between the size query and the read
        for _ in range(3):
            buffer = ctypes.create_string_buffer(size.value)
            result = function(buffer, ctypes.byref(size), False, AF_INET, table_class, 0)
            if result == NO_ERROR:
                return buffer.raw
            if result != ERROR_INSUFFICIENT_BUFFER:
                break
        raise TableUnavailable(f"{function_name} failed with error {result}")


def make_table_source(name: str) -> TableSource:
    """Build the table source named in the configuration."""
    if name == "iphlpapi":
        return IphlpapiTableSource()
    return PsutilTableSource()


def read_connections(source: TableSource) -> list[ConnectionRecord]:
    """
    Read the TCP table, then the UDP table, and concatenate them.

    Raises:
        TableUnavailable: If either table cannot be obtained.
    """
    try:
        records = source.tcp() + source.udp()
    except TableUnavailable:
        raise
    except Exception as exc:
        raise TableUnavailable(str(exc)) from exc
    logger.debug("Read %d connection records", len(records))
    return records
