"""
Tests for the introspection XML synthesized from the object registry.
"""

import asyncio
import itertools
import xml.etree.ElementTree as ElementTree
import pytest
import busloopback
import busobjects
from busvalues import \
    DBUS, \
    DBUSX

IFACE = "com.example.Iface"

def child_names(xml) :
    return \
        list(n.get("name") for n in ElementTree.fromstring(xml).findall("node"))
#end child_names

def interface_names(xml) :
    return \
        list(i.get("name") for i in ElementTree.fromstring(xml).findall("interface"))
#end interface_names

@pytest.mark.parametrize("paths", list(itertools.permutations(["/a", "/a/b", "/a/c"])))
def test_children_listed_once_in_any_order(paths) :
    server = busobjects.ObjectServer(busloopback.Connection())
    for path in paths :
        server.add_object(path)
    #end for
    server.add_object("/a/b/deeper")
    assert child_names(server.get_xml_for_path("/a")) == ["b", "c"]
#end test_children_listed_once_in_any_order

def test_root_lists_top_level_children(server) :
    server.add_object("/b/c")
    server.add_object("/a")
    xml = server.get_xml_for_path("/")
    assert child_names(xml) == ["a", "b"]
    assert interface_names(xml) == []
    server.add_object("/")
    xml = server.get_xml_for_path("/")
    assert child_names(xml) == ["a", "b"]
    assert DBUS.INTERFACE_PROPERTIES in interface_names(xml)
#end test_root_lists_top_level_children

def test_unknown_path_gives_empty_node(server) :
    server.add_object("/a")
    xml = server.get_xml_for_path("/ab")
    assert xml.startswith(DBUS.INTROSPECT_1_0_XML_DOCTYPE_DECL_NODE)
    root = ElementTree.fromstring(xml)
    assert root.tag == "node" and len(root) == 0
#end test_unknown_path_gives_empty_node

def test_interface_description(server) :
    iface = server.add_object("/a").add_interface(IFACE)

    def add(a : int, b : int) -> int :
        return \
            a + b
    #end add

#begin test_interface_description
    iface.register_method("Add", add)
    iface.register_method("Reset", lambda : None, in_signature = "", out_signature = "")
    iface.register_signal("Tick", "u")
    iface.set_properties([("Foo", 42), ("a<b", "x")])
    xml = server.get_xml_for_path("/a")
    assert interface_names(xml) == \
        [
            DBUS.INTERFACE_PEER,
            DBUS.INTERFACE_INTROSPECTABLE,
            DBUSX.INTERFACE_OBJECT_MANAGER,
            DBUS.INTERFACE_PROPERTIES,
            IFACE,
        ]
    element = ElementTree.fromstring(xml).find("interface[@name='%s']" % IFACE)
    add_method = element.find("method[@name='Add']")
    assert list((a.get("name"), a.get("type"), a.get("direction")) for a in add_method.findall("arg")) == \
        [
            ("arg_0", "i", "in"),
            ("arg_1", "i", "in"),
            ("out_0", "i", "out"),
        ]
    assert element.find("method[@name='Reset']").findall("arg") == []
    tick_args = element.find("signal[@name='Tick']").findall("arg")
    assert len(tick_args) == 1
    assert tick_args[0].get("type") == "u" and tick_args[0].get("direction") == None
    props = dict((p.get("name"), (p.get("type"), p.get("access"))) for p in element.findall("property"))
    assert props == {"Foo" : ("i", "readwrite"), "a<b" : ("s", "readwrite")}
#end test_interface_description

def test_properties_interface_described(server) :
    server.add_object("/a")
    element = ElementTree.fromstring(server.get_xml_for_path("/a")) \
        .find("interface[@name='%s']" % DBUS.INTERFACE_PROPERTIES)
    get = element.find("method[@name='Get']")
    assert list(a.get("type") for a in get.findall("arg")) == ["s", "s", "v"]
    get_all = element.find("method[@name='GetAll']")
    assert list(a.get("type") for a in get_all.findall("arg")) == ["s", "a{sv}"]
    assert element.find("signal[@name='PropertiesChanged']") != None
#end test_properties_interface_described

def test_introspect_call(server, transport, make_call) :
    server.add_object("/a").add_interface(IFACE).set_property("Foo", 1)
    server.add_object("/a/b")

    async def run() :
        async with server :
            return \
                await transport.call(make_call("/a", DBUS.INTERFACE_INTROSPECTABLE, "Introspect"))
        #end with
    #end run

#begin test_introspect_call
    reply = asyncio.run(run())
    assert reply.signature == "s"
    assert reply.objects == [server.get_xml_for_path("/a")]
    assert child_names(reply.objects[0]) == ["b"]
#end test_introspect_call
