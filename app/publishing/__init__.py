"""
Publishing app.

Takes large media uploaded in chunks and publishes it to an external social
platform that only accepts pull-from-URL submissions:

    chunks -> merge -> artifact URL -> credential refresh -> submit
           -> poll to terminal state -> cleanup
"""
