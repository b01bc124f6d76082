"""
Tests for property storage, PropertiesChanged announcements and the
org.freedesktop.DBus.Properties methods.
"""

import asyncio
import pytest
import busobjects
from busvalues import \
    DBUS, \
    DBUSX, \
    Variant
from busobjects import \
    UPDATE

IFACE = "com.example.Iface"

def properties_changed(transport) :
    return \
        transport.signals(DBUS.INTERFACE_PROPERTIES, "PropertiesChanged")
#end properties_changed

def test_change_gated_update_announces_once(server, transport) :
    iface = server.add_object("/a").add_interface(IFACE)
    iface.set_properties([("p", 5)], UPDATE.VALUE_CHANGE_ONLY)
    iface.set_properties([("p", 5)], UPDATE.VALUE_CHANGE_ONLY)
    changed = properties_changed(transport)
    assert len(changed) == 1
    assert changed[0].path == "/a"
    assert changed[0].objects == [IFACE, {"p" : Variant("i", 5)}, []]
    assert iface.properties["p"] == Variant.of(5)
#end test_change_gated_update_announces_once

def test_forced_update_always_announces(server, transport) :
    iface = server.add_object("/a").add_interface(IFACE)
    iface.set_properties([("p", 5)], UPDATE.FORCE)
    iface.set_properties([("p", 5)], UPDATE.FORCE)
    iface.set_properties([], UPDATE.FORCE)
    changed = properties_changed(transport)
    assert len(changed) == 3
    assert changed[1].objects == [IFACE, {"p" : Variant("i", 5)}, []]
    assert changed[2].objects == [IFACE, {}, []]
    assert iface.properties["p"] == Variant("i", 5)
#end test_forced_update_always_announces

def test_empty_change_gated_update_is_silent(server, transport) :
    iface = server.add_object("/a").add_interface(IFACE)
    assert iface.set_properties([]) == []
    assert properties_changed(transport) == []
#end test_empty_change_gated_update_is_silent

def test_different_type_counts_as_change(server, transport) :
    iface = server.add_object("/a").add_interface(IFACE)
    iface.set_property("p", 1)
    iface.set_property("p", Variant("u", 1))
    assert len(properties_changed(transport)) == 2
    assert iface.properties["p"].signature == "u"
#end test_different_type_counts_as_change

def test_diff_follows_update_order(server) :
    iface = server.add_object("/a").add_interface(IFACE)
    iface.set_properties({"a" : 1, "b" : 2})
    changed = iface.set_properties([("b", 2), ("c", 3), ("a", 4)])
    assert changed == [("c", Variant.of(3)), ("a", Variant.of(4))]
    assert list(iface.get_properties_map()) == ["a", "b", "c"]
#end test_diff_follows_update_order

def test_bad_value_rejects_whole_update(server) :
    iface = server.add_object("/a").add_interface(IFACE)
    with pytest.raises(TypeError) :
        iface.set_properties([("a", 1), ("b", object())])
    #end with
    assert "a" not in iface.properties
    with pytest.raises(TypeError) :
        iface.set_properties([("a", 1)], "force")
    #end with
#end test_bad_value_rejects_whole_update

def test_unattached_interface_stores_quietly(server, transport) :
    iface = busobjects.Interface(IFACE, server.bus)
    iface.set_property("p", 1)
    assert properties_changed(transport) == []
    server.add_object("/a").register_interface(iface)
    iface.set_property("p", 2)
    added = transport.signals(DBUSX.INTERFACE_OBJECT_MANAGER, "InterfacesAdded")[-1]
    assert added.objects == ["/a", {IFACE : {"p" : Variant.of(1)}}]
    assert len(properties_changed(transport)) == 1
#end test_unattached_interface_stores_quietly

def test_get_property(server, transport, make_call) :
    server.add_object("/a").add_interface(IFACE).set_property("Foo", 42)

    async def run() :
        async with server :
            found = await transport.call(make_call("/a", DBUS.INTERFACE_PROPERTIES, "Get", "ss", IFACE, "Foo"))
            missing = await transport.call(make_call("/a", DBUS.INTERFACE_PROPERTIES, "Get", "ss", IFACE, "Missing"))
            no_iface = await transport.call \
              (
                make_call("/a", DBUS.INTERFACE_PROPERTIES, "Get", "ss", "com.example.Other", "Foo")
              )
        #end with
        return \
            found, missing, no_iface
    #end run

#begin test_get_property
    found, missing, no_iface = asyncio.run(run())
    assert found.type == DBUS.MESSAGE_TYPE_METHOD_RETURN
    assert found.objects == [Variant("i", 42)]
    assert found.objects[0].value == 42
    assert missing.type == DBUS.MESSAGE_TYPE_ERROR
    assert missing.error_name == DBUS.ERROR_UNKNOWN_PROPERTY
    assert no_iface.type == DBUS.MESSAGE_TYPE_ERROR
    assert no_iface.error_name == DBUS.ERROR_UNKNOWN_INTERFACE
#end test_get_property

def test_get_all_returns_requested_interface(server, transport, make_call) :
    iface = server.add_object("/a").add_interface(IFACE)
    iface.set_properties([("Foo", 42), ("Bar", "x")])

    async def run() :
        async with server :
            wanted = await transport.call(make_call("/a", DBUS.INTERFACE_PROPERTIES, "GetAll", "s", IFACE))
            own = await transport.call \
              (
                make_call("/a", DBUS.INTERFACE_PROPERTIES, "GetAll", "s", DBUS.INTERFACE_PROPERTIES)
              )
        #end with
        return \
            wanted, own
    #end run

#begin test_get_all_returns_requested_interface
    wanted, own = asyncio.run(run())
    assert wanted.signature == "a{sv}"
    assert wanted.objects == [{"Foo" : Variant("i", 42), "Bar" : Variant("s", "x")}]
    assert own.objects == [{}]
#end test_get_all_returns_requested_interface

def test_set_property(server, transport, make_call) :
    iface = server.add_object("/a").add_interface(IFACE)
    iface.set_property("Foo", 42)

    async def run() :
        async with server :
            reply = await transport.call \
              (
                make_call("/a", DBUS.INTERFACE_PROPERTIES, "Set", "ssv", IFACE, "Foo", Variant.of(7))
              )
            unchanged = await transport.call \
              (
                make_call("/a", DBUS.INTERFACE_PROPERTIES, "Set", "ssv", IFACE, "Foo", Variant.of(7))
              )
        #end with
        return \
            reply, unchanged
    #end run

#begin test_set_property
    reply, unchanged = asyncio.run(run())
    assert reply.type == DBUS.MESSAGE_TYPE_METHOD_RETURN and reply.signature == ""
    assert unchanged.type == DBUS.MESSAGE_TYPE_METHOD_RETURN
    assert iface.properties["Foo"] == Variant("i", 7)
    changed = properties_changed(transport)
    assert len(changed) == 2
    assert changed[-1].objects == [IFACE, {"Foo" : Variant("i", 7)}, []]
#end test_set_property

def test_get_with_wrong_arguments(server, transport, make_call) :
    server.add_object("/a").add_interface(IFACE)

    async def run() :
        async with server :
            return \
                await transport.call(make_call("/a", DBUS.INTERFACE_PROPERTIES, "Get", "s", IFACE))
        #end with
    #end run

#begin test_get_with_wrong_arguments
    reply = asyncio.run(run())
    assert reply.type == DBUS.MESSAGE_TYPE_ERROR
    assert reply.error_name == DBUS.ERROR_INVALID_ARGS
#end test_get_with_wrong_arguments

def test_get_all_and_set_on_unknown_interface(server, transport, make_call) :
    iface = server.add_object("/a").add_interface(IFACE)
    iface.set_property("Foo", 42)

    async def run() :
        async with server :
            get_all = await transport.call \
              (
                make_call("/a", DBUS.INTERFACE_PROPERTIES, "GetAll", "s", "com.example.Other")
              )
            set_prop = await transport.call \
              (
                make_call("/a", DBUS.INTERFACE_PROPERTIES, "Set", "ssv", "com.example.Other", "Foo", Variant.of(7))
              )
        #end with
        return \
            get_all, set_prop
    #end run

#begin test_get_all_and_set_on_unknown_interface
    get_all, set_prop = asyncio.run(run())
    assert get_all.type == DBUS.MESSAGE_TYPE_ERROR
    assert get_all.error_name == DBUS.ERROR_UNKNOWN_INTERFACE
    assert set_prop.type == DBUS.MESSAGE_TYPE_ERROR
    assert set_prop.error_name == DBUS.ERROR_UNKNOWN_INTERFACE
    assert iface.properties["Foo"] == Variant("i", 42)
    assert len(properties_changed(transport)) == 1
#end test_get_all_and_set_on_unknown_interface

def test_stored_values_cannot_be_changed_in_place(server, transport) :
    iface = server.add_object("/a").add_interface(IFACE)
    iface.set_properties([("L", Variant("as", ["a"])), ("D", Variant("a{si}", {"k" : 1}))])
    announced = len(properties_changed(transport))
    snapshot = iface.get_properties_map()
    with pytest.raises(AttributeError) :
        snapshot["L"].value.append("b")
    #end with
    with pytest.raises(TypeError) :
        snapshot["D"].value["k"] = 2
    #end with
    snapshot["L"] = Variant("as", ["z"])
    assert iface.properties["L"] == Variant("as", ["a"])
    assert iface.properties["D"].value["k"] == 1
    assert len(properties_changed(transport)) == announced
#end test_stored_values_cannot_be_changed_in_place
