"""
Module containing the DNS lookups used to check the published dns-01 challenge records
"""
import socket

import dns.exception
import dns.resolver

DEFAULT_DNS_TIMEOUT = 2
DNS_PORT = 53


class DNSError(Exception):
    """Base DNS error class"""


class DNSServerResolutionError(DNSError):
    """A DNS server specified by hostname can't be resolved"""


class DNSFailedQueryError(DNSError):
    """Unable to perform DNS query"""


class DNSNoAnswerError(DNSError):
    """Query performed successfully. No answer obtained"""


def get_server_addresses(dns_servers, port=DNS_PORT):
    """Returns the IP addresses of dns_servers, hostnames are resolved using the system resolver"""
    addresses = []
    for dns_server in dns_servers:
        try:
            addresses_info = socket.getaddrinfo(dns_server, port, proto=socket.IPPROTO_UDP)
        except (socket.gaierror, UnicodeError) as resolution_error:
            raise DNSServerResolutionError('Unable to resolve DNS server {}'.format(dns_server)) \
                from resolution_error

        for *_, sockaddr in addresses_info:
            if sockaddr[0] not in addresses:
                addresses.append(sockaddr[0])

    return addresses


class Resolver:
    """dnspython resolver bound to an explicit set of DNS servers with a short timeout"""
    def __init__(self, nameservers=None, timeout=DEFAULT_DNS_TIMEOUT, port=DNS_PORT):
        self._resolver = dns.resolver.Resolver()
        self._resolver.timeout = timeout
        self._resolver.lifetime = timeout
        self._resolver.port = port
        if nameservers is not None:
            self._resolver.nameservers = get_server_addresses(nameservers, port=port)

    def txt_query(self, name):
        """Returns the values of the TXT records published on name"""
        try:
            answer = self._resolver.resolve(name, rdtype='TXT')
        except (dns.resolver.NXDOMAIN, dns.resolver.YXDOMAIN, dns.resolver.NoAnswer) as no_answer:
            raise DNSNoAnswerError('No TXT records found for {}'.format(name)) from no_answer
        except (dns.exception.Timeout, dns.resolver.NoNameservers) as query_error:
            raise DNSFailedQueryError('Unable to query TXT records for {}'.format(name)) from query_error

        # long TXT values are split in several character-strings
        return [b''.join(rdata.strings).decode('utf-8') for rdata in answer]

    def has_txt_value(self, name, value):
        """True if name serves a TXT record with value. A missing record isn't an error"""
        try:
            return value in self.txt_query(name)
        except DNSNoAnswerError:
            return False
