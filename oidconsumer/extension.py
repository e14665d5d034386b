"""Extension hooks.

An extension is attached to an authentication attempt and gets called
twice: once with the request message while it is being built, and
once with the verified response.
"""
from oidconsumer.message import OPENID_NS


class Extension(object):
    """An interface for OpenID extensions.

    @ivar ns_uri: The namespace to which to add the arguments for this
        extension
    @ivar ns_alias: The alias the namespace is declared with in OpenID
        2 messages. In OpenID 1 messages it is used as the key prefix.
    """
    ns_uri = None
    ns_alias = None

    def getExtensionArgs(self):
        """Get the string arguments that should be added to an OpenID
        message for this extension.

        @rtype: {str: str}
        """
        raise NotImplementedError

    def toMessage(self, message):
        """Add the arguments from this extension to the provided
        message.

        @returns: The message with the extension arguments added
        """
        args = self.getExtensionArgs()
        if message.isOpenID1():
            # OpenID 1 has no namespace declarations, the alias is
            # simply a part of the key.
            message.updateArgs(OPENID_NS, {
                '%s.%s' % (self.ns_alias, key): value
                for key, value in args.items()
            })
        else:
            if self.ns_alias is not None and self.ns_uri not in message.namespaces:
                message.namespaces.addAlias(self.ns_uri, self.ns_alias)
            message.updateArgs(self.ns_uri, args)
        return message

    def on_request(self, message):
        """Called once with the request message before it is encoded
        into the redirect URL."""
        self.toMessage(message)

    def on_response(self, response):
        """Called once with the verified
        L{Response<oidconsumer.consumer.Response>}."""
